"""
Session Orchestrator

Protocol state machine for one chat connection. Binds the STT path
(batch transcode + transcribe, or realtime CommitGate + VAD + assembler) and
the chat path (retrieval → token stream → sentence segmenter → synthesis
dispatcher) to the envelope protocol.

State per connection:
- STT:  IDLE → RECORDING → TRANSCRIBING → IDLE (one turn per sessionId)
- Chat: IDLE → STREAMING → IDLE

Liveness: every user_text ends in exactly one of {done, error}; every STT turn
ends in exactly one of {stt_result, stt_error}.

Inbound frames are handled one at a time by the connection's worker task.
"""

import asyncio
import base64
import binascii
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol

from parley.core.config import settings
from parley.core.envelope import InboundEnvelope, InboundType, OutboundType, ReplyContext, build_event, new_id
from parley.core.logging import get_logger, get_voice_logger
from parley.core.metrics import chat_turns_total, llm_first_token_seconds, stt_transcription_seconds, stt_turns_total
from parley.core.voice_errors import (
    LLM_001,
    RAG_001,
    STT_002,
    STT_004,
    VoiceError,
    as_voice_error,
    record_voice_error,
)
from parley.services.audio_transcoder import StreamingTranscoder
from parley.services.knowledge_service import KnowledgeIndex, RetrievalHit, format_context
from parley.services.llm_client import Embedder, TokenStreamer
from parley.services.prompt_composer import Persona, compose_messages
from parley.services.realtime_stt_service import RealtimeSttSession, RealtimeTranscriptionBackend
from parley.services.sentence_chunker import SentenceSegmenter
from parley.services.session_memory import MemoryRole, SessionMemory
from parley.services.stt_service import Transcriber
from parley.services.synthesis_dispatcher import Sentence, SynthesisDispatcher
from parley.services.tts_service import SpeechSynthesizer

logger = get_logger(__name__)
voice_log = get_voice_logger(__name__)

SendFn = Callable[[Dict[str, Any]], Awaitable[None]]

DEFAULT_STT_MIME = "audio/webm"


class Transcoder(Protocol):
    async def to_wav_pcm16(self, data: bytes, mime: Optional[str] = None) -> bytes:
        ...


# ==============================================================================
# Data Classes
# ==============================================================================


class SttMode(str, Enum):
    BATCH = "batch"
    REALTIME = "realtime"


class SttPhase(str, Enum):
    IDLE = "idle"
    RECORDING = "recording"
    TRANSCRIBING = "transcribing"


class ChatPhase(str, Enum):
    IDLE = "idle"
    STREAMING = "streaming"


@dataclass
class SttTurn:
    """One open speech-to-text turn, keyed by the client's sessionId."""

    session_id: str
    context: ReplyContext
    mime: str = DEFAULT_STT_MIME
    lang: Optional[str] = None
    mode: SttMode = SttMode.BATCH
    chunks: List[bytes] = field(default_factory=list)
    realtime: Optional[RealtimeSttSession] = None
    phase: SttPhase = SttPhase.RECORDING
    started_at: float = field(default_factory=time.monotonic)

    @property
    def audio(self) -> bytes:
        return b"".join(self.chunks)

    @property
    def audio_bytes(self) -> int:
        return sum(len(chunk) for chunk in self.chunks)


@dataclass
class ChatTurn:
    """One streamed assistant response."""

    context: ReplyContext
    token_seq: int = 0
    sentence_index: int = 0
    sentences: List[str] = field(default_factory=list)

    @property
    def turn_id(self) -> str:
        return self.context.turn_id

    def next_token_seq(self) -> int:
        seq = self.token_seq
        self.token_seq += 1
        return seq

    def cut(self, text: str) -> Sentence:
        sentence = Sentence(index=self.sentence_index, text=text, turn_id=self.turn_id)
        self.sentence_index += 1
        self.sentences.append(text)
        return sentence

    @property
    def assistant_text(self) -> str:
        return " ".join(self.sentences).strip()


@dataclass
class SessionState:
    """Connection-scoped state; never shared across connections."""

    session_id: str = field(default_factory=new_id)
    memory: SessionMemory = field(default_factory=SessionMemory)
    stt_turns: Dict[str, SttTurn] = field(default_factory=dict)
    chat_turn: Optional[ChatTurn] = None
    chat_turns_completed: int = 0
    stt_turns_completed: int = 0
    created_at: float = field(default_factory=time.monotonic)

    @property
    def chat_phase(self) -> ChatPhase:
        return ChatPhase.STREAMING if self.chat_turn else ChatPhase.IDLE


@dataclass
class SessionServices:
    """Backends shared by every connection of the process."""

    llm: TokenStreamer
    synthesizer: SpeechSynthesizer
    transcoder: Transcoder
    transcriber: Transcriber
    embedder: Optional[Embedder] = None
    knowledge: KnowledgeIndex = field(default_factory=KnowledgeIndex)
    persona: Persona = field(default_factory=Persona.from_settings)
    realtime_backend_factory: Optional[Callable[[], RealtimeTranscriptionBackend]] = None
    realtime_transcoder_factory: Callable[..., Any] = StreamingTranscoder
    retrieval_top_k: int = field(default_factory=lambda: settings.RETRIEVAL_TOP_K)
    preview_chars: int = field(default_factory=lambda: settings.CTX_PREVIEW_CHARS)


# ==============================================================================
# Orchestrator
# ==============================================================================


class SessionOrchestrator:
    """
    Routes inbound envelopes for one connection and emits all outbound events.

    Inbound (client → server):
    - stt_start{sessionId, lang?, mime?, mode?}
    - stt_audio{sessionId, base64Chunk}
    - stt_end{sessionId}
    - user_text{text, tts?, voice?}

    Outbound (server → client): stt_ack, stt_ready, stt_vad_start,
    stt_transcript_partial, stt_transcript_final, stt_vad_stop, stt_result,
    stt_error, ctx_sources, llm_token, sentence, tts_levels, tts_chunk,
    tts_error, done, error
    """

    def __init__(
        self,
        services: SessionServices,
        send: SendFn,
        state: Optional[SessionState] = None,
        segmenter_factory: Callable[[], SentenceSegmenter] = SentenceSegmenter,
    ):
        self.services = services
        self._send = send
        self.state = state or SessionState()
        self._segmenter_factory = segmenter_factory
        self._dispatcher: Optional[SynthesisDispatcher] = None
        self._closed = False

    @property
    def session_id(self) -> str:
        return self.state.session_id

    async def _emit(self, event_type: OutboundType, data: Dict[str, Any], context: ReplyContext) -> None:
        await self._send(build_event(event_type, data, context))

    def _emitter(self, context: ReplyContext) -> Callable[[OutboundType, dict], Awaitable[None]]:
        async def emit(event_type: OutboundType, data: dict) -> None:
            await self._emit(event_type, data, context)

        return emit

    async def handle_envelope(self, envelope: InboundEnvelope) -> None:
        """Dispatch one inbound envelope. Unknown types are dropped."""
        if self._closed:
            return

        handlers = {
            InboundType.STT_START.value: self._handle_stt_start,
            InboundType.STT_AUDIO.value: self._handle_stt_audio,
            InboundType.STT_END.value: self._handle_stt_end,
            InboundType.USER_TEXT.value: self._handle_user_text,
        }
        handler = handlers.get(envelope.type)
        if handler is None:
            logger.warning("unknown_message_type", type=envelope.type, session_id=self.session_id)
            return
        await handler(envelope)

    # --------------------------------------------------------------------------
    # STT path
    # --------------------------------------------------------------------------

    @staticmethod
    def _stt_session_id(envelope: InboundEnvelope) -> Optional[str]:
        session_id = envelope.data.get("sessionId")
        if isinstance(session_id, (int, float)) and not isinstance(session_id, bool):
            session_id = str(session_id)
        if not isinstance(session_id, str) or not session_id:
            return None
        return session_id

    async def _handle_stt_start(self, envelope: InboundEnvelope) -> None:
        stt_id = self._stt_session_id(envelope)
        if stt_id is None:
            logger.warning("stt_start_dropped", reason="missing sessionId", session_id=self.session_id)
            return
        if stt_id in self.state.stt_turns:
            logger.debug("stt_start_duplicate", stt_session_id=stt_id)
            return

        data = envelope.data
        mime = data.get("mime") if isinstance(data.get("mime"), str) and data.get("mime") else DEFAULT_STT_MIME
        lang = data.get("lang") if isinstance(data.get("lang"), str) and data.get("lang") else None
        mode = SttMode.REALTIME if data.get("mode") == SttMode.REALTIME.value else SttMode.BATCH

        context = ReplyContext.for_inbound(envelope)
        turn = SttTurn(session_id=stt_id, context=context, mime=mime, lang=lang, mode=mode)
        self.state.stt_turns[stt_id] = turn
        voice_log.state_change(
            session_id=self.session_id,
            from_state=SttPhase.IDLE.value,
            to_state=SttPhase.RECORDING.value,
            trigger="stt_start",
            stt_session_id=stt_id,
            mode=mode.value,
        )
        await self._emit(OutboundType.STT_ACK, {"sessionId": stt_id}, context)

        if mode == SttMode.REALTIME:
            await self._start_realtime(turn)

    async def _start_realtime(self, turn: SttTurn) -> None:
        factory = self.services.realtime_backend_factory
        try:
            if factory is None:
                raise VoiceError(
                    STT_004,
                    message="Realtime transcription is not configured",
                    session_id=self.session_id,
                )
            turn.realtime = RealtimeSttSession(
                session_id=turn.session_id,
                emit=self._emitter(turn.context),
                backend=factory(),
                language=turn.lang,
                transcoder_factory=self.services.realtime_transcoder_factory,
            )
            await turn.realtime.start()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            error = as_voice_error(e, STT_004, provider="openai-realtime", session_id=self.session_id)
            await self._fail_stt_turn(turn, error)

    async def _handle_stt_audio(self, envelope: InboundEnvelope) -> None:
        stt_id = self._stt_session_id(envelope)
        turn = self.state.stt_turns.get(stt_id) if stt_id else None
        if turn is None:
            return

        encoded = envelope.data.get("base64Chunk", envelope.data.get("b64"))
        if not isinstance(encoded, str):
            logger.warning("stt_audio_dropped", reason="missing chunk", stt_session_id=stt_id)
            return
        try:
            chunk = base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError):
            logger.warning("stt_audio_dropped", reason="invalid base64", stt_session_id=stt_id)
            return
        if not chunk:
            return

        turn.chunks.append(chunk)
        if turn.realtime is None:
            return

        try:
            await turn.realtime.feed(chunk)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            error = as_voice_error(e, STT_002, provider="ffmpeg", session_id=self.session_id)
            await self._fail_stt_turn(turn, error)

    async def _handle_stt_end(self, envelope: InboundEnvelope) -> None:
        stt_id = self._stt_session_id(envelope)
        turn = self.state.stt_turns.pop(stt_id, None) if stt_id else None
        if turn is None:
            return

        turn.phase = SttPhase.TRANSCRIBING
        start = time.perf_counter()
        try:
            if turn.mode == SttMode.REALTIME:
                text = await turn.realtime.finish()
            else:
                text = await self._transcribe_batch(turn)
        except asyncio.CancelledError:
            await self._release_stt_turn(turn)
            raise
        except Exception as e:
            error = as_voice_error(e, STT_002, session_id=self.session_id)
            await self._fail_stt_turn(turn, error)
            return

        duration_ms = (time.perf_counter() - start) * 1000
        try:
            await self._emit(OutboundType.STT_RESULT, {"sessionId": turn.session_id, "text": text}, turn.context)
        finally:
            await self._release_stt_turn(turn)

        stt_turns_total.labels(mode=turn.mode.value, outcome="result").inc()
        self.state.stt_turns_completed += 1
        voice_log.stt_result(
            session_id=self.session_id,
            transcript_length=len(text),
            duration_ms=duration_ms,
            provider=turn.mode.value,
            stt_session_id=turn.session_id,
        )

    async def _transcribe_batch(self, turn: SttTurn) -> str:
        start = time.perf_counter()
        wav = await self.services.transcoder.to_wav_pcm16(turn.audio, turn.mime)
        text = await self.services.transcriber.transcribe(wav, turn.lang)
        stt_transcription_seconds.observe(time.perf_counter() - start)
        return text

    async def _fail_stt_turn(self, turn: SttTurn, error: VoiceError) -> None:
        """Emit the turn's single stt_error and tear it down."""
        self.state.stt_turns.pop(turn.session_id, None)
        record_voice_error(error.error_code, provider=error.provider)
        voice_log.error(
            "stt_turn_failed",
            session_id=self.session_id,
            error_code=error.code,
            error_category=error.error_code.category.value,
            stt_session_id=turn.session_id,
        )
        stt_turns_total.labels(mode=turn.mode.value, outcome="error").inc()
        self.state.stt_turns_completed += 1
        try:
            await self._emit(
                OutboundType.STT_ERROR,
                {"sessionId": turn.session_id, **error.to_event_data()},
                turn.context,
            )
        finally:
            await self._release_stt_turn(turn)

    async def _release_stt_turn(self, turn: SttTurn) -> None:
        turn.phase = SttPhase.IDLE
        turn.chunks.clear()
        if turn.realtime is not None:
            try:
                await turn.realtime.close()
            except Exception as e:
                logger.warning("realtime_close_failed", error=str(e), stt_session_id=turn.session_id)

    # --------------------------------------------------------------------------
    # Chat path
    # --------------------------------------------------------------------------

    async def _handle_user_text(self, envelope: InboundEnvelope) -> None:
        text = envelope.data.get("text")
        if not isinstance(text, str):
            logger.warning("user_text_dropped", reason="missing text", session_id=self.session_id)
            return

        wants_audio = bool(envelope.data.get("tts"))
        voice = envelope.data.get("voice") if isinstance(envelope.data.get("voice"), str) else None
        context = ReplyContext.for_inbound(envelope)
        turn = ChatTurn(context=context)
        self.state.chat_turn = turn

        dispatcher: Optional[SynthesisDispatcher] = None
        if wants_audio:
            dispatcher = SynthesisDispatcher(
                self.services.synthesizer,
                self._emitter(context),
                voice=voice,
                session_id=self.session_id,
            )
            self._dispatcher = dispatcher

        try:
            await self._run_chat_turn(turn, text, dispatcher)
        except asyncio.CancelledError:
            if dispatcher is not None:
                await dispatcher.cancel()
            raise
        finally:
            self.state.chat_turn = None
            self._dispatcher = None

    async def _retrieve(self, text: str) -> List[RetrievalHit]:
        """Top-k knowledge hits; any failure degrades to no context."""
        services = self.services
        if services.embedder is None or not len(services.knowledge) or not text.strip():
            return []
        try:
            query = await services.embedder.embed(text)
            return services.knowledge.top_k(query, services.retrieval_top_k)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("retrieval_failed", error=str(e), session_id=self.session_id)
            record_voice_error(RAG_001, provider="openai")
            return []

    async def _run_chat_turn(self, turn: ChatTurn, text: str, dispatcher: Optional[SynthesisDispatcher]) -> None:
        start = time.perf_counter()
        context = turn.context

        hits = await self._retrieve(text)
        if hits:
            sources = [hit.to_source(self.services.preview_chars) for hit in hits]
            await self._emit(OutboundType.CTX_SOURCES, {"sources": sources}, context)

        memory = self.state.memory
        messages = compose_messages(
            text,
            self.services.persona,
            memory_block=memory.render(),
            context_block=format_context(hits),
        )
        memory.push(MemoryRole.USER, text)

        segmenter = self._segmenter_factory()
        error: Optional[VoiceError] = None
        try:
            first_token = True
            async for delta in self.services.llm.stream_chat(messages):
                if first_token:
                    first_token = False
                    llm_first_token_seconds.observe(time.perf_counter() - start)
                await self._emit(OutboundType.LLM_TOKEN, {"text": delta, "seq": turn.next_token_seq()}, context)
                for sentence_text in segmenter.push(delta):
                    await self._emit_sentence(turn, sentence_text, dispatcher)

            tail = segmenter.flush()
            if tail:
                await self._emit_sentence(turn, tail, dispatcher)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            error = as_voice_error(e, LLM_001, provider="openai", session_id=self.session_id)

        # Audio already scheduled is delivered before the terminal event
        if dispatcher is not None:
            await dispatcher.drain()

        if error is not None:
            record_voice_error(error.error_code, provider=error.provider)
            chat_turns_total.labels(outcome="error").inc()
            await self._emit(OutboundType.ERROR, error.to_event_data(), context)
            return

        await self._emit(OutboundType.DONE, {}, context)
        chat_turns_total.labels(outcome="done").inc()
        self.state.chat_turns_completed += 1
        if turn.assistant_text:
            memory.push(MemoryRole.ASSISTANT, turn.assistant_text)

        voice_log.latency(
            stage="chat_turn",
            duration_ms=(time.perf_counter() - start) * 1000,
            session_id=self.session_id,
            sentences=len(turn.sentences),
            tokens=turn.token_seq,
        )

    async def _emit_sentence(
        self,
        turn: ChatTurn,
        text: str,
        dispatcher: Optional[SynthesisDispatcher],
    ) -> None:
        sentence = turn.cut(text)
        await self._emit(OutboundType.SENTENCE, {"text": sentence.text, "index": sentence.index}, turn.context)
        if dispatcher is not None:
            dispatcher.submit(sentence)

    # --------------------------------------------------------------------------
    # Lifecycle
    # --------------------------------------------------------------------------

    async def report_error(self, error: VoiceError, context: Optional[ReplyContext] = None) -> None:
        """Emit a connection-scoped ``error`` event (e.g. an unexpected handler failure)."""
        await self._emit(OutboundType.ERROR, error.to_event_data(), context or ReplyContext(turn_id=new_id()))

    async def close(self) -> None:
        """Tear down every turn bound to this connection."""
        if self._closed:
            return
        self._closed = True

        if self._dispatcher is not None:
            await self._dispatcher.cancel()
            self._dispatcher = None

        turns = list(self.state.stt_turns.values())
        self.state.stt_turns.clear()
        for turn in turns:
            await self._release_stt_turn(turn)
        self.state.memory.clear()

        voice_log.session_end(
            session_id=self.session_id,
            duration_ms=(time.monotonic() - self.state.created_at) * 1000,
            turn_count=self.state.chat_turns_completed,
            stt_turns=self.state.stt_turns_completed,
            open_stt_turns=len(turns),
        )

    def get_stats(self) -> dict:
        return {
            "session_id": self.session_id,
            "chat_phase": self.state.chat_phase.value,
            "open_stt_turns": len(self.state.stt_turns),
            "chat_turns_completed": self.state.chat_turns_completed,
            "stt_turns_completed": self.state.stt_turns_completed,
            "memory_entries": len(self.state.memory),
        }
