"""
Realtime Speech-to-Text Session

Streams browser audio to the OpenAI realtime transcription API while the
client is still speaking.

Pipeline per STT turn:
    webm chunks → ffmpeg (s16le 16 kHz mono) → input_audio_buffer.append
                                             → VAD (speech start / end of turn)
                                             → CommitGate → input_audio_buffer.commit
    transcription.completed (ack) → CommitGate reset → TranscriptAssembler → partial

Client events: stt_ready, stt_vad_start, stt_transcript_partial,
stt_transcript_final, stt_vad_stop. The terminal stt_result / stt_error is
emitted by the orchestrator from ``finish()``.
"""

import asyncio
import base64
import json
from typing import AsyncIterator, Awaitable, Callable, Optional, Protocol

import websockets
from websockets.exceptions import ConnectionClosed

from parley.core.config import settings
from parley.core.envelope import OutboundType
from parley.core.logging import get_logger, get_voice_logger
from parley.core.metrics import stt_commits_total
from parley.core.resilience import breaker_tracking, ensure_breaker_closed, openai_breaker
from parley.core.voice_errors import STT_003, STT_004, VoiceError, as_voice_error, record_voice_error
from parley.services.audio_transcoder import StreamingTranscoder
from parley.services.commit_gate import CommitGate
from parley.services.transcript_assembler import TranscriptAssembler
from parley.services.voice_activity_detector import EndOfTurnDetector

logger = get_logger(__name__)
voice_log = get_voice_logger(__name__)

EmitFn = Callable[[OutboundType, dict], Awaitable[None]]

TRANSCRIPTION_COMPLETED = "conversation.item.input_audio_transcription.completed"


class RealtimeTranscriptionBackend(Protocol):
    async def connect(self, language: Optional[str]) -> None:
        ...

    async def append(self, pcm: bytes) -> None:
        ...

    async def commit(self) -> None:
        ...

    def events(self) -> AsyncIterator[dict]:
        ...

    async def close(self) -> None:
        ...


# ==============================================================================
# OpenAI Realtime Backend
# ==============================================================================


class OpenAIRealtimeBackend:
    """WebSocket client for the OpenAI realtime API in transcription-only use."""

    provider = "openai-realtime"

    def __init__(
        self,
        api_key: Optional[str] = None,
        url: Optional[str] = None,
        model: Optional[str] = None,
    ):
        self.api_key = api_key or settings.OPENAI_API_KEY
        self.url = url or settings.STT_REALTIME_URL
        self.model = model or settings.STT_REALTIME_MODEL
        self._websocket = None

    async def connect(self, language: Optional[str]) -> None:
        if not self.api_key:
            raise VoiceError(STT_004, message="OpenAI API key not configured", provider=self.provider)
        ensure_breaker_closed(openai_breaker, STT_004, self.provider)

        try:
            async with breaker_tracking(openai_breaker):
                self._websocket = await websockets.connect(
                    self.url,
                    additional_headers={
                        "Authorization": f"Bearer {self.api_key}",
                        "OpenAI-Beta": "realtime=v1",
                    },
                    ping_interval=20,
                    ping_timeout=10,
                )
        except (OSError, websockets.WebSocketException) as e:
            raise VoiceError(STT_004, provider=self.provider, original_error=e) from e

        # Turn detection stays local (VAD + CommitGate decide when to commit)
        await self._send(
            {
                "type": "transcription_session.update",
                "session": {
                    "input_audio_format": "pcm16",
                    "input_audio_transcription": {"model": self.model, "language": language or "en"},
                    "turn_detection": None,
                },
            }
        )
        logger.info("Realtime transcription connected", model=self.model, language=language or "en")

    async def _send(self, payload: dict) -> None:
        if self._websocket is None:
            raise VoiceError(STT_003, message="Realtime backend not connected", provider=self.provider)
        await self._websocket.send(json.dumps(payload))

    async def append(self, pcm: bytes) -> None:
        await self._send({"type": "input_audio_buffer.append", "audio": base64.b64encode(pcm).decode("ascii")})

    async def commit(self) -> None:
        await self._send({"type": "input_audio_buffer.commit"})

    async def events(self) -> AsyncIterator[dict]:
        if self._websocket is None:
            return
        async for message in self._websocket:
            try:
                event = json.loads(message)
            except json.JSONDecodeError:
                logger.warning("Invalid JSON from realtime backend: %s", str(message)[:100])
                continue
            if isinstance(event, dict):
                yield event

    async def close(self) -> None:
        if self._websocket is not None:
            await self._websocket.close()
            self._websocket = None


# ==============================================================================
# Session
# ==============================================================================


class RealtimeSttSession:
    def __init__(
        self,
        session_id: str,
        emit: EmitFn,
        backend: RealtimeTranscriptionBackend,
        language: Optional[str] = None,
        transcoder_factory: Callable[..., StreamingTranscoder] = StreamingTranscoder,
        gate: Optional[CommitGate] = None,
        detector: Optional[EndOfTurnDetector] = None,
        partial_commit_ms: Optional[int] = None,
        ack_timeout_sec: Optional[float] = None,
    ):
        self.session_id = session_id
        self.emit = emit
        self.backend = backend
        self.language = language
        self.gate = gate or CommitGate()
        self.detector = detector or EndOfTurnDetector()
        self.assembler = TranscriptAssembler()
        self.partial_commit_ms = partial_commit_ms or settings.STT_PARTIAL_COMMIT_MS
        self.ack_timeout_sec = ack_timeout_sec or settings.STT_ACK_TIMEOUT_SEC

        self._transcoder = transcoder_factory(self._on_pcm)
        self._receive_task: Optional[asyncio.Task] = None
        self._tick_task: Optional[asyncio.Task] = None
        self._finalize_task: Optional[asyncio.Task] = None
        self._backend_error: Optional[VoiceError] = None
        self._upstream_lost = False
        self._closed = False

    @property
    def provider(self) -> str:
        return getattr(self.backend, "provider", "realtime")

    async def start(self) -> None:
        """Connect upstream and start transcoding. Raises VoiceError on failure."""
        await self.backend.connect(self.language)
        self.gate.set_ready(True)
        self._receive_task = asyncio.create_task(self._receive_loop())
        await self._transcoder.start()
        self._tick_task = asyncio.create_task(self._tick_loop())
        await self.emit(OutboundType.STT_READY, {"sessionId": self.session_id})

    async def feed(self, chunk: bytes) -> None:
        """Compressed audio from the client."""
        await self._transcoder.write(chunk)

    # --------------------------------------------------------------------------
    # Audio ingest path
    # --------------------------------------------------------------------------

    async def _on_pcm(self, pcm: bytes) -> None:
        # Once upstream is gone the transcoder output is drained and dropped
        if self._upstream_lost:
            return
        try:
            await self.backend.append(pcm)
        except (OSError, VoiceError, websockets.WebSocketException) as e:
            await self._on_upstream_lost(e)
            return
        await self.gate.on_audio(len(pcm))

        for decision in self.detector.process(pcm):
            if decision.speech_started:
                await self._on_speech_start()
            if decision.end_of_turn:
                voice_log.vad_event(session_id=self.session_id, event_type="end_of_turn", reason=decision.reason)
                self._finalize_task = asyncio.create_task(self._finalize_turn(decision.preroll_ms))

        await self._commit_if_ready()

    async def _commit_if_ready(self) -> None:
        if await self.gate.try_commit(self.backend.commit):
            stt_commits_total.inc()

    async def _on_upstream_lost(self, error: Exception) -> None:
        self._upstream_lost = True
        self.gate.set_ready(False)
        await self.gate.on_transport_error()
        if self._backend_error is None:
            self._backend_error = as_voice_error(error, STT_003, provider=self.provider, session_id=self.session_id)
        logger.warning("realtime_upstream_lost", session_id=self.session_id, error=str(error))

    async def _tick_loop(self) -> None:
        """Safety-net commit check for slow or bursty audio."""
        while True:
            await asyncio.sleep(self.partial_commit_ms / 1000)
            await self._commit_if_ready()

    async def _on_speech_start(self) -> None:
        # The previous turn must be finalized before its text is cleared
        if self._finalize_task and not self._finalize_task.done():
            await self._finalize_task
        self.assembler.reset()
        voice_log.vad_event(session_id=self.session_id, event_type="speech_start")
        await self.emit(OutboundType.STT_VAD_START, {"sessionId": self.session_id})

    async def _finalize_turn(self, preroll_ms: float) -> None:
        await asyncio.sleep(preroll_ms / 1000)
        await self._commit_if_ready()
        await self.gate.wait_idle(self.ack_timeout_sec)

        final = self.assembler.finalize()
        if final:
            await self.emit(OutboundType.STT_TRANSCRIPT_FINAL, {"sessionId": self.session_id, "text": final})
        await self.emit(OutboundType.STT_VAD_STOP, {"sessionId": self.session_id})

    # --------------------------------------------------------------------------
    # Backend ack path
    # --------------------------------------------------------------------------

    async def _receive_loop(self) -> None:
        try:
            async for event in self.backend.events():
                await self._handle_event(event)
        except ConnectionClosed as e:
            self._backend_error = as_voice_error(e, STT_003, provider=self.provider, session_id=self.session_id)
        finally:
            self.gate.set_ready(False)
            await self.gate.on_transport_error()

    async def _handle_event(self, event: dict) -> None:
        event_type = event.get("type", "")

        if event_type == TRANSCRIPTION_COMPLETED:
            await self.gate.on_ack()
            partial = self.assembler.add_fragment(event.get("transcript") or event.get("text"))
            if partial:
                await self.emit(
                    OutboundType.STT_TRANSCRIPT_PARTIAL,
                    {"sessionId": self.session_id, "text": partial},
                )
        elif event_type == "error":
            await self.gate.on_transport_error()
            message = (event.get("error") or {}).get("message") or "Realtime transcription error"
            self._backend_error = VoiceError(
                STT_003, message=message, provider=self.provider, session_id=self.session_id
            )
            record_voice_error(STT_003, provider=self.provider)
        else:
            logger.debug("Realtime event %s", event_type)

    # --------------------------------------------------------------------------
    # Lifecycle
    # --------------------------------------------------------------------------

    async def finish(self) -> str:
        """
        Stop accepting audio, commit the tail and wait for the last ack.

        Returns:
            Every finalized segment plus unfinished text, space-joined

        Raises:
            VoiceError: the recorded backend error when nothing was transcribed
        """
        await self._cancel_task(self._tick_task)
        await self._transcoder.finish(timeout=self.ack_timeout_sec)
        if self._transcoder.error is not None and self._backend_error is None:
            self._backend_error = as_voice_error(
                self._transcoder.error, STT_003, provider=self.provider, session_id=self.session_id
            )
        if self._finalize_task and not self._finalize_task.done():
            await self._finalize_task

        await self._commit_if_ready()
        if not await self.gate.wait_idle(self.ack_timeout_sec):
            logger.warning("Realtime ack timed out", session_id=self.session_id, **self.gate.get_stats())

        text = self.assembler.full_transcript()
        if not text and self._backend_error is not None:
            raise self._backend_error
        return text

    async def close(self) -> None:
        """Release the ffmpeg process, the upstream socket and all tasks."""
        if self._closed:
            return
        self._closed = True
        for task in (self._tick_task, self._finalize_task, self._receive_task):
            await self._cancel_task(task)
        await self._transcoder.close()
        await self.backend.close()

    @staticmethod
    async def _cancel_task(task: Optional[asyncio.Task]) -> None:
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    def get_stats(self) -> dict:
        return {
            "gate": self.gate.get_stats(),
            "vad": self.detector.get_stats(),
            "segments": len(self.assembler.finalized_segments),
        }
