"""
Integration tests for the session orchestrator.

Every backend is a stub; events are captured as wire dicts exactly as they
would be written to the socket.
"""

import asyncio
import base64

import numpy as np
import pytest

from conftest import (
    FakeRealtimeBackend,
    PassThroughTranscoder,
    StubEmbedder,
    StubSynthesizer,
    StubTokenStreamer,
    sine_pcm,
)
from parley.core.envelope import parse_envelope
from parley.core.voice_errors import INT_001, VoiceError
from parley.services.knowledge_service import DocChunk, KnowledgeIndex
from parley.services.prompt_composer import Persona
from parley.services.session_memory import MemoryRole
from parley.services.session_orchestrator import SessionOrchestrator, SessionServices

pytestmark = pytest.mark.integration


class WireRecorder:
    def __init__(self):
        self.frames = []

    async def __call__(self, frame):
        self.frames.append(frame)

    @property
    def types(self):
        return [frame["type"] for frame in self.frames]

    def data_of(self, event_type):
        return [frame["data"] for frame in self.frames if frame["type"] == event_type]


def envelope(event_type, data=None, turn_id="turn-1", message_id="msg-1"):
    return parse_envelope({"type": event_type, "turnId": turn_id, "messageId": message_id, "data": data or {}})


def b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


@pytest.fixture
def services(token_streamer, synthesizer, transcoder, transcriber):
    return SessionServices(
        llm=token_streamer,
        synthesizer=synthesizer,
        transcoder=transcoder,
        transcriber=transcriber,
        persona=Persona(name="Sam", role="a host"),
    )


@pytest.fixture
def recorder():
    return WireRecorder()


@pytest.fixture
def orchestrator(services, recorder):
    return SessionOrchestrator(services, recorder)


class TestChatTurn:
    """Test user_text turns."""

    @pytest.mark.asyncio
    async def test_tokens_sentence_done(self, orchestrator, recorder):
        await orchestrator.handle_envelope(envelope("user_text", {"text": "Hello?"}))

        assert recorder.types == ["llm_token", "llm_token", "sentence", "done"]
        assert recorder.data_of("llm_token") == [{"text": "Hi ", "seq": 0}, {"text": "there.", "seq": 1}]
        assert recorder.data_of("sentence") == [{"text": "Hi there.", "index": 0}]
        assert recorder.data_of("done") == [{}]
        assert all(frame["turnId"] == "turn-1" and frame["replyTo"] == "msg-1" for frame in recorder.frames)
        assert len({frame["messageId"] for frame in recorder.frames}) == 4

    @pytest.mark.asyncio
    async def test_memory_records_both_sides(self, orchestrator):
        await orchestrator.handle_envelope(envelope("user_text", {"text": "Hello?"}))

        entries = orchestrator.state.memory.entries()
        assert [(entry.role, entry.text) for entry in entries] == [
            (MemoryRole.USER, "Hello?"),
            (MemoryRole.ASSISTANT, "Hi there."),
        ]

    @pytest.mark.asyncio
    async def test_second_turn_sees_earlier_turns_only(self, orchestrator, token_streamer):
        await orchestrator.handle_envelope(envelope("user_text", {"text": "First"}))
        await orchestrator.handle_envelope(envelope("user_text", {"text": "Second"}, turn_id="turn-2"))

        first_messages, second_messages = token_streamer.calls
        assert not any(m["content"].startswith("SESSION MEMORY") for m in first_messages)
        memory_block = next(m["content"] for m in second_messages if m["content"].startswith("SESSION MEMORY"))
        assert memory_block == "SESSION MEMORY (brief, last 2 turns):\nUser: First\nAssistant: Hi there."
        assert second_messages[-1] == {"role": "user", "content": "Second"}

    @pytest.mark.asyncio
    async def test_generation_failure_ends_with_error(self, services, recorder):
        services.llm = StubTokenStreamer(["Hello. ", "world"], fail_after=1)
        orchestrator = SessionOrchestrator(services, recorder)

        await orchestrator.handle_envelope(envelope("user_text", {"text": "Hi"}))

        assert recorder.types == ["llm_token", "sentence", "error"]
        assert recorder.data_of("error")[0]["code"] == "LLM_001"
        assert [entry.role for entry in orchestrator.state.memory.entries()] == [MemoryRole.USER]
        assert orchestrator.state.chat_turn is None

    @pytest.mark.asyncio
    async def test_tail_is_flushed_as_last_sentence(self, services, recorder):
        services.llm = StubTokenStreamer(["Sure. ", "Let me think"])
        orchestrator = SessionOrchestrator(services, recorder)

        await orchestrator.handle_envelope(envelope("user_text", {"text": "Hi"}))

        assert recorder.data_of("sentence") == [{"text": "Sure.", "index": 0}, {"text": "Let me think", "index": 1}]
        assert recorder.types[-1] == "done"

    @pytest.mark.asyncio
    async def test_non_string_text_is_dropped(self, orchestrator, recorder, token_streamer):
        await orchestrator.handle_envelope(envelope("user_text", {"text": 42}))
        await orchestrator.handle_envelope(envelope("user_text", {}))

        assert recorder.frames == []
        assert token_streamer.calls == []


class TestChatAudio:
    """Test sentence-level synthesis within a chat turn."""

    @pytest.mark.asyncio
    async def test_audio_in_sentence_order_before_done(self, services, recorder, synthesizer):
        services.llm = StubTokenStreamer(["One. Two. ", "Three."])
        orchestrator = SessionOrchestrator(services, recorder)

        await orchestrator.handle_envelope(envelope("user_text", {"text": "Count", "tts": True, "voice": "v1"}))

        assert [d["sentenceIndex"] for d in recorder.data_of("tts_chunk")] == [0, 1, 2]
        assert [d["sentenceIndex"] for d in recorder.data_of("tts_levels")] == [0, 1, 2]
        assert recorder.types[-1] == "done"
        assert synthesizer.calls == ["One.", "Two.", "Three."]

    @pytest.mark.asyncio
    async def test_no_audio_without_tts_flag(self, orchestrator, recorder, synthesizer):
        await orchestrator.handle_envelope(envelope("user_text", {"text": "Hi"}))

        assert synthesizer.calls == []
        assert "tts_chunk" not in recorder.types

    @pytest.mark.asyncio
    async def test_synthesis_failure_does_not_fail_turn(self, services, recorder):
        services.llm = StubTokenStreamer(["One. Two. Three."])
        services.synthesizer = StubSynthesizer(fail_on={"Two."})
        orchestrator = SessionOrchestrator(services, recorder)

        await orchestrator.handle_envelope(envelope("user_text", {"text": "Count", "tts": 1}))

        audio = [(f["type"], f["data"]["sentenceIndex"]) for f in recorder.frames if f["type"] in ("tts_chunk", "tts_error")]
        assert audio == [("tts_chunk", 0), ("tts_error", 1), ("tts_chunk", 2)]
        assert recorder.types[-1] == "done"


class TestRetrieval:
    """Test knowledge context in chat turns."""

    @pytest.fixture
    def knowledge(self):
        embedder = StubEmbedder()

        async def build():
            texts = {"privacy.md": "Privacy and surveillance.", "music.md": "Music history."}
            chunks = []
            for source, text in texts.items():
                vector = np.asarray(await embedder.embed(text))
                chunks.append(DocChunk(id=f"{source}#0", source=source, text=text, embedding=vector))
            return KnowledgeIndex(chunks)

        return build

    @pytest.mark.asyncio
    async def test_sources_emitted_and_context_sent(self, services, recorder, token_streamer, knowledge):
        services.embedder = StubEmbedder()
        services.knowledge = await knowledge()
        services.retrieval_top_k = 1
        orchestrator = SessionOrchestrator(services, recorder)

        await orchestrator.handle_envelope(envelope("user_text", {"text": "Tell me about privacy"}))

        assert recorder.types[0] == "ctx_sources"
        sources = recorder.data_of("ctx_sources")[0]["sources"]
        assert [(s["n"], s["source"]) for s in sources] == [(1, "privacy.md")]
        context = next(m["content"] for m in token_streamer.calls[0] if m["content"].startswith("CONTEXT:"))
        assert context == "CONTEXT:\n[ctx:1] (privacy.md) Privacy and surveillance."

    @pytest.mark.asyncio
    async def test_retrieval_failure_degrades_to_no_context(self, services, recorder, knowledge):
        class BrokenEmbedder:
            async def embed(self, text):
                raise RuntimeError("embedding backend down")

        services.embedder = BrokenEmbedder()
        services.knowledge = await knowledge()
        orchestrator = SessionOrchestrator(services, recorder)

        await orchestrator.handle_envelope(envelope("user_text", {"text": "privacy"}))

        assert "ctx_sources" not in recorder.types
        assert recorder.types[-1] == "done"

    @pytest.mark.asyncio
    async def test_blank_text_skips_retrieval(self, services, recorder, knowledge):
        services.embedder = StubEmbedder()
        services.knowledge = await knowledge()
        orchestrator = SessionOrchestrator(services, recorder)

        await orchestrator.handle_envelope(envelope("user_text", {"text": "   "}))

        assert "ctx_sources" not in recorder.types
        assert recorder.types[-1] == "done"


class TestBatchStt:
    """Test record-then-transcribe STT turns."""

    @pytest.mark.asyncio
    async def test_full_turn(self, orchestrator, recorder, transcoder, transcriber):
        start = {"sessionId": "s1", "mime": "audio/ogg", "lang": "en"}
        await orchestrator.handle_envelope(envelope("stt_start", start))
        await orchestrator.handle_envelope(envelope("stt_audio", {"sessionId": "s1", "base64Chunk": b64(b"abc")}))
        await orchestrator.handle_envelope(envelope("stt_audio", {"sessionId": "s1", "b64": b64(b"def")}))
        await orchestrator.handle_envelope(envelope("stt_end", {"sessionId": "s1"}))

        assert recorder.types == ["stt_ack", "stt_result"]
        assert recorder.data_of("stt_ack") == [{"sessionId": "s1"}]
        assert recorder.data_of("stt_result") == [{"sessionId": "s1", "text": "hello"}]
        assert transcoder.calls == [(b"abcdef", "audio/ogg")]
        assert transcriber.calls[0][1] == "en"
        assert orchestrator.state.stt_turns == {}

    @pytest.mark.asyncio
    async def test_audio_after_end_is_ignored(self, orchestrator, recorder, transcoder):
        await orchestrator.handle_envelope(envelope("stt_start", {"sessionId": "s1"}))
        await orchestrator.handle_envelope(envelope("stt_audio", {"sessionId": "s1", "base64Chunk": b64(b"abc")}))
        await orchestrator.handle_envelope(envelope("stt_end", {"sessionId": "s1"}))
        await orchestrator.handle_envelope(envelope("stt_audio", {"sessionId": "s1", "base64Chunk": b64(b"zzz")}))
        await orchestrator.handle_envelope(envelope("stt_end", {"sessionId": "s1"}))

        assert recorder.types == ["stt_ack", "stt_result"]
        assert transcoder.calls == [(b"abc", "audio/webm")]

    @pytest.mark.asyncio
    async def test_invalid_frames_are_dropped(self, orchestrator, recorder):
        await orchestrator.handle_envelope(envelope("stt_start", {}))
        await orchestrator.handle_envelope(envelope("stt_start", {"sessionId": "s1"}))
        await orchestrator.handle_envelope(envelope("stt_start", {"sessionId": "s1"}))
        await orchestrator.handle_envelope(envelope("stt_audio", {"sessionId": "s1", "base64Chunk": "***"}))
        await orchestrator.handle_envelope(envelope("stt_audio", {"sessionId": "s1"}))
        await orchestrator.handle_envelope(envelope("stt_audio", {"sessionId": "other", "base64Chunk": b64(b"x")}))

        assert recorder.types == ["stt_ack"]
        assert orchestrator.state.stt_turns["s1"].chunks == []

    @pytest.mark.asyncio
    async def test_numeric_session_id(self, orchestrator, recorder):
        await orchestrator.handle_envelope(envelope("stt_start", {"sessionId": 7}))
        assert recorder.data_of("stt_ack") == [{"sessionId": "7"}]

    @pytest.mark.asyncio
    async def test_transcription_failure(self, services, recorder):
        class FailingTranscriber:
            async def transcribe(self, wav, lang=None):
                raise RuntimeError("service unavailable")

        services.transcriber = FailingTranscriber()
        orchestrator = SessionOrchestrator(services, recorder)

        await orchestrator.handle_envelope(envelope("stt_start", {"sessionId": "s1"}))
        await orchestrator.handle_envelope(envelope("stt_audio", {"sessionId": "s1", "base64Chunk": b64(b"abc")}))
        await orchestrator.handle_envelope(envelope("stt_end", {"sessionId": "s1"}))

        assert recorder.types == ["stt_ack", "stt_error"]
        error = recorder.data_of("stt_error")[0]
        assert error["sessionId"] == "s1"
        assert error["code"] == "STT_002"
        assert orchestrator.state.stt_turns == {}

    @pytest.mark.asyncio
    async def test_concurrent_turns_are_independent(self, orchestrator, recorder, transcoder):
        await orchestrator.handle_envelope(envelope("stt_start", {"sessionId": "a"}))
        await orchestrator.handle_envelope(envelope("stt_start", {"sessionId": "b"}))
        await orchestrator.handle_envelope(envelope("stt_audio", {"sessionId": "a", "base64Chunk": b64(b"AA")}))
        await orchestrator.handle_envelope(envelope("stt_audio", {"sessionId": "b", "base64Chunk": b64(b"BB")}))
        await orchestrator.handle_envelope(envelope("stt_end", {"sessionId": "b"}))
        await orchestrator.handle_envelope(envelope("stt_end", {"sessionId": "a"}))

        assert [d["sessionId"] for d in recorder.data_of("stt_result")] == ["b", "a"]
        assert [call[0] for call in transcoder.calls] == [b"BB", b"AA"]


class TestRealtimeStt:
    """Test realtime STT turns through the orchestrator."""

    @pytest.mark.asyncio
    async def test_not_configured(self, orchestrator, recorder):
        await orchestrator.handle_envelope(envelope("stt_start", {"sessionId": "r1", "mode": "realtime"}))

        assert recorder.types == ["stt_ack", "stt_error"]
        assert recorder.data_of("stt_error")[0]["code"] == "STT_004"
        assert orchestrator.state.stt_turns == {}

    @pytest.mark.asyncio
    async def test_streaming_turn(self, services, recorder):
        backends = []

        def backend_factory():
            backend = FakeRealtimeBackend()
            backends.append(backend)
            return backend

        services.realtime_backend_factory = backend_factory
        services.realtime_transcoder_factory = PassThroughTranscoder
        orchestrator = SessionOrchestrator(services, recorder)

        await orchestrator.handle_envelope(envelope("stt_start", {"sessionId": "r1", "mode": "realtime", "lang": "de"}))
        pcm = sine_pcm(300, amplitude=0.3)
        for offset in range(0, len(pcm), 3200):
            chunk = pcm[offset : offset + 3200]
            await orchestrator.handle_envelope(envelope("stt_audio", {"sessionId": "r1", "base64Chunk": b64(chunk)}))
            await asyncio.sleep(0.001)
        await orchestrator.handle_envelope(envelope("stt_end", {"sessionId": "r1"}))

        types = recorder.types
        assert types[:3] == ["stt_ack", "stt_ready", "stt_vad_start"]
        assert types[-1] == "stt_result"
        assert recorder.data_of("stt_result") == [{"sessionId": "r1", "text": "word1"}]
        assert all(frame["turnId"] == "turn-1" for frame in recorder.frames)
        assert backends[0].language == "de"
        assert backends[0].closed is True
        assert orchestrator.state.stt_turns == {}

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "fail_after,terminal,payload",
        [
            (6400, "stt_result", {"sessionId": "r1", "text": "word1"}),
            (0, "stt_error", None),
        ],
    )
    async def test_upstream_drop_ends_turn_once(self, services, recorder, fail_after, terminal, payload):
        backend = FakeRealtimeBackend(fail_append_after=fail_after)
        services.realtime_backend_factory = lambda: backend
        services.realtime_transcoder_factory = PassThroughTranscoder
        orchestrator = SessionOrchestrator(services, recorder)

        await orchestrator.handle_envelope(envelope("stt_start", {"sessionId": "r1", "mode": "realtime"}))
        pcm = sine_pcm(500, amplitude=0.3)
        for offset in range(0, len(pcm), 3200):
            chunk = pcm[offset : offset + 3200]
            await orchestrator.handle_envelope(envelope("stt_audio", {"sessionId": "r1", "base64Chunk": b64(chunk)}))
            await asyncio.sleep(0.001)
        await orchestrator.handle_envelope(envelope("stt_end", {"sessionId": "r1"}))

        terminals = [kind for kind in recorder.types if kind in ("stt_result", "stt_error")]
        assert terminals == [terminal]
        if payload is not None:
            assert recorder.data_of("stt_result") == [payload]
        else:
            assert recorder.data_of("stt_error")[0]["code"] == "STT_003"
        assert backend.closed is True
        assert orchestrator.state.stt_turns == {}

    @pytest.mark.asyncio
    async def test_connect_failure(self, services, recorder):
        services.realtime_backend_factory = lambda: FakeRealtimeBackend(fail_connect=True)
        services.realtime_transcoder_factory = PassThroughTranscoder
        orchestrator = SessionOrchestrator(services, recorder)

        await orchestrator.handle_envelope(envelope("stt_start", {"sessionId": "r1", "mode": "realtime"}))
        await orchestrator.handle_envelope(envelope("stt_end", {"sessionId": "r1"}))

        assert recorder.types == ["stt_ack", "stt_error"]
        assert recorder.data_of("stt_error")[0]["code"] == "STT_004"


class TestLifecycle:
    """Test routing and teardown."""

    @pytest.mark.asyncio
    async def test_unknown_type_is_ignored(self, orchestrator, recorder):
        await orchestrator.handle_envelope(envelope("ping", {}))
        assert recorder.frames == []

    @pytest.mark.asyncio
    async def test_close_releases_open_turns(self, services, recorder):
        backend = FakeRealtimeBackend()
        services.realtime_backend_factory = lambda: backend
        services.realtime_transcoder_factory = PassThroughTranscoder
        orchestrator = SessionOrchestrator(services, recorder)

        await orchestrator.handle_envelope(envelope("stt_start", {"sessionId": "r1", "mode": "realtime"}))
        await orchestrator.handle_envelope(envelope("stt_start", {"sessionId": "b1"}))
        orchestrator.state.memory.push(MemoryRole.USER, "remember me")

        await orchestrator.close()

        assert backend.closed is True
        assert orchestrator.state.stt_turns == {}
        assert len(orchestrator.state.memory) == 0

        frames_before = len(recorder.frames)
        await orchestrator.handle_envelope(envelope("user_text", {"text": "late"}))
        assert len(recorder.frames) == frames_before

    @pytest.mark.asyncio
    async def test_report_error(self, orchestrator, recorder):
        await orchestrator.report_error(VoiceError(INT_001))

        assert recorder.types == ["error"]
        assert recorder.data_of("error")[0]["code"] == "INT_001"

    @pytest.mark.asyncio
    async def test_stats(self, orchestrator):
        await orchestrator.handle_envelope(envelope("user_text", {"text": "Hi"}))
        stats = orchestrator.get_stats()
        assert stats["chat_phase"] == "idle"
        assert stats["chat_turns_completed"] == 1
        assert stats["memory_entries"] == 2
