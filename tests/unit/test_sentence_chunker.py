"""
Unit tests for the dual-rule sentence segmenter.

Covers punctuation cuts, the inactivity-gap forced cut and its split point,
flush semantics and content preservation.
"""

import pytest

from parley.services.sentence_chunker import SegmenterConfig, SentenceSegmenter


class FakeClock:
    def __init__(self, start: float = 100.0):
        self.now = start

    def advance_ms(self, ms: float) -> None:
        self.now += ms / 1000

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def segmenter(clock):
    return SentenceSegmenter(config=SegmenterConfig(gap_ms=380), clock=clock)


class TestPunctuationCuts:
    """Test cuts on sentence terminators."""

    def test_single_sentence_then_flush_is_none(self, segmenter):
        """A complete sentence is yielded at once and nothing remains."""
        assert segmenter.push("Hello world.") == ["Hello world."]
        assert segmenter.flush() is None

    def test_multiple_terminators_in_one_delta(self, segmenter):
        """Several sentences in one delta come out in order."""
        assert segmenter.push("One. Two! Three? Four") == ["One.", "Two!", "Three?"]
        assert segmenter.flush() == "Four"

    def test_punctuation_runs_count_once(self, segmenter):
        """Ellipses and mixed runs are a single terminator."""
        assert segmenter.push("Wait... Really?! Yes…") == ["Wait...", "Really?!", "Yes…"]

    def test_terminator_needs_whitespace_or_end(self, segmenter):
        """A period inside a token (e.g. a decimal) does not cut."""
        assert segmenter.push("Pi is 3.14 roughly") == []
        assert segmenter.flush() == "Pi is 3.14 roughly"

    def test_sentence_split_across_deltas(self, segmenter):
        """Deltas accumulate until a terminator arrives."""
        assert segmenter.push("Hi ") == []
        assert segmenter.push("there.") == ["Hi there."]

    def test_whitespace_only_slices_are_dropped(self, segmenter):
        """Trailing whitespace after a cut never yields an empty sentence."""
        assert segmenter.push("Done.   ") == ["Done."]
        assert segmenter.push("   ") == []
        assert segmenter.flush() is None

    def test_empty_delta_is_noop(self, segmenter):
        """An empty delta yields nothing and leaves the buffer untouched."""
        segmenter.push("Partial")
        assert segmenter.push("") == []
        assert segmenter.buffered_text == "Partial"


class TestGapCut:
    """Test the inactivity-gap forced cut."""

    def test_gap_forces_pre_gap_content_before_new_delta(self, segmenter, clock):
        """The pre-gap buffer is its own sentence; the new delta starts the next."""
        assert segmenter.push("Wait") == []
        clock.advance_ms(500)
        assert segmenter.push("more") == ["Wait"]
        assert segmenter.flush() == "more"

    def test_no_cut_within_gap(self, segmenter, clock):
        """Pushes closer together than the gap keep accumulating."""
        segmenter.push("Wait")
        clock.advance_ms(200)
        assert segmenter.push(" more") == []
        assert segmenter.flush() == "Wait more"

    def test_gap_with_empty_buffer_yields_nothing(self, segmenter, clock):
        """A gap after a clean cut has nothing to force out."""
        segmenter.push("Done. ")
        clock.advance_ms(1000)
        assert segmenter.push("Next") == []

    def test_empty_delta_after_gap_flushes_buffer(self, segmenter, clock):
        """An empty delta still measures the gap."""
        segmenter.push("Stalled")
        clock.advance_ms(400)
        assert segmenter.push("") == ["Stalled"]
        assert segmenter.flush() is None

    def test_explicit_now_overrides_clock(self, clock):
        """Token arrival times passed as ``now`` drive the gap."""
        segmenter = SentenceSegmenter(config=SegmenterConfig(gap_ms=380), clock=clock)
        segmenter.push("Early", now=1.0)
        assert segmenter.push(" late", now=1.5) == ["Early"]

    def test_gap_then_punctuation_in_same_push(self, segmenter, clock):
        """Forced cut comes first, then punctuation cuts from the new delta."""
        segmenter.push("Thinking")
        clock.advance_ms(600)
        assert segmenter.push("Okay. Go") == ["Thinking", "Okay."]
        assert segmenter.flush() == "Go"


class TestContentPreservation:
    """Test that segmentation never loses or invents content."""

    @pytest.mark.parametrize(
        "deltas,gaps",
        [
            (["Hel", "lo. ", "How are", " you? Fine", "!"], [0, 0, 0, 0, 0]),
            (["A", "B", "C. D", "E"], [0, 500, 0, 500]),
            (["... ", "?! ", "ok"], [0, 0, 0]),
        ],
    )
    def test_round_trip(self, segmenter, clock, deltas, gaps):
        """Joined output equals joined input modulo whitespace."""
        out = []
        for delta, gap in zip(deltas, gaps):
            clock.advance_ms(gap)
            out.extend(segmenter.push(delta))
        tail = segmenter.flush()
        if tail:
            out.append(tail)
        assert "".join("".join(out).split()) == "".join("".join(deltas).split())


class TestSegmenterState:
    """Test reset and statistics."""

    def test_reset_clears_buffer_and_gap(self, segmenter, clock):
        segmenter.push("Leftover")
        segmenter.reset()
        clock.advance_ms(1000)
        assert segmenter.push("Fresh") == []
        assert segmenter.flush() == "Fresh"

    def test_stats_count_forced_cuts(self, segmenter, clock):
        segmenter.push("One")
        clock.advance_ms(400)
        segmenter.push("Two.")
        stats = segmenter.get_stats()
        assert stats["forced_cuts"] == 1
        assert stats["sentences_emitted"] == 2
        assert stats["gap_ms"] == 380
