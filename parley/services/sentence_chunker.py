"""
Sentence Segmenter for Streaming LLM Output

Turns a stream of text deltas into complete sentences for display and TTS.

Two cut rules compete:
- Punctuation: one or more of . ! ? … followed by whitespace or end of buffer
- Inactivity: when the gap since the previous push exceeds ``gap_ms``, the
  buffered text is released as-is so a stalled generator never holds a
  sentence back indefinitely

Concatenating every yielded sentence plus the final ``flush()`` reproduces the
input content, modulo whitespace trimming at the cut points.
"""

import re
import time
from dataclasses import dataclass
from typing import Callable, List, Optional

from parley.core.config import settings
from parley.core.logging import get_logger

logger = get_logger(__name__)

# A run of terminators counts as one ("...", "?!")
SENTENCE_END = re.compile(r"[.!?…]+(?:\s+|$)")


@dataclass
class SegmenterConfig:
    """Configuration for the sentence segmenter."""

    # Inactivity gap that forces the buffer out as a sentence
    gap_ms: int = 380


class SentenceSegmenter:
    """
    Dual-rule sentence segmenter.

    The gap is measured between consecutive ``push`` calls using ``clock``
    (seconds, monotonic). Callers that batch deltas can pass the token arrival
    time as ``now`` to measure inter-token latency instead.
    """

    def __init__(
        self,
        config: Optional[SegmenterConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or SegmenterConfig(gap_ms=settings.SENTENCE_GAP_MS)
        self._clock = clock
        self._buffer = ""
        self._last_push_at: Optional[float] = None

        self._sentences_emitted = 0
        self._forced_cuts = 0

    def push(self, delta: str, now: Optional[float] = None) -> List[str]:
        """
        Add a text delta and return the sentences it completes, in order.

        Args:
            delta: Raw text delta from the generator (may be empty)
            now: Arrival time in seconds; defaults to ``clock()``

        Returns:
            Completed sentences (possibly empty)
        """
        now = self._clock() if now is None else now
        gap_ms = 0.0 if self._last_push_at is None else (now - self._last_push_at) * 1000
        self._last_push_at = now

        sentences: List[str] = []

        # Release pre-gap content on its own before the new delta joins it
        if gap_ms > self.config.gap_ms:
            pending = self._buffer.strip()
            if pending:
                sentences.append(pending)
                self._forced_cuts += 1
                logger.debug("sentence_forced_cut", gap_ms=round(gap_ms, 1), chars=len(pending))
            self._buffer = ""

        if delta:
            self._buffer += delta
            sentences.extend(self._cut_on_punctuation())

        self._sentences_emitted += len(sentences)
        return sentences

    def _cut_on_punctuation(self) -> List[str]:
        sentences = []
        match = SENTENCE_END.search(self._buffer)
        while match:
            head = self._buffer[: match.end()].strip()
            self._buffer = self._buffer[match.end() :]
            if head:
                sentences.append(head)
            match = SENTENCE_END.search(self._buffer)
        return sentences

    def flush(self) -> Optional[str]:
        """Return the trimmed remainder once, or None when nothing is buffered."""
        remainder = self._buffer.strip()
        self._buffer = ""
        if not remainder:
            return None
        self._sentences_emitted += 1
        return remainder

    def reset(self) -> None:
        """Reset for a new turn."""
        self._buffer = ""
        self._last_push_at = None
        self._sentences_emitted = 0
        self._forced_cuts = 0

    @property
    def buffered_text(self) -> str:
        return self._buffer

    def get_stats(self) -> dict:
        """Get segmenter statistics"""
        return {
            "sentences_emitted": self._sentences_emitted,
            "forced_cuts": self._forced_cuts,
            "buffer_length": len(self._buffer),
            "gap_ms": self.config.gap_ms,
        }
