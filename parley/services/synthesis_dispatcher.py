"""
Synthesis Dispatcher

Fans completed sentences out to concurrent TTS jobs and emits their results
strictly in sentence-index order.

Flow per sentence:
1. ``submit`` starts the synthesis task immediately
2. On completion the outcome enters a reorder buffer keyed by sentence index
3. The buffer releases outcomes only once every lower index was released
4. Each released outcome becomes ``tts_levels`` + ``tts_chunk`` or ``tts_error``

A failed sentence is released in its slot like a success, so it never blocks
later sentences.
"""

import asyncio
import base64
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Generic, List, Optional, TypeVar

from parley.core.config import settings
from parley.core.envelope import OutboundType
from parley.core.logging import get_logger, get_voice_logger
from parley.core.voice_errors import TTS_001, VoiceError, as_voice_error, record_voice_error
from parley.services.audio_levels import LevelEnvelope, WavFormatError, levels_from_wav
from parley.services.tts_service import SpeechSynthesizer

logger = get_logger(__name__)
voice_log = get_voice_logger(__name__)

T = TypeVar("T")

EmitFn = Callable[[OutboundType, dict], Awaitable[None]]


@dataclass(frozen=True)
class Sentence:
    index: int
    text: str
    turn_id: str


@dataclass
class SynthesisOutcome:
    sentence: Sentence
    audio: Optional[bytes] = None
    levels: Optional[LevelEnvelope] = None
    error: Optional[VoiceError] = None
    latency_ms: int = 0

    @property
    def ok(self) -> bool:
        return self.error is None


# ==============================================================================
# Reorder Buffer
# ==============================================================================


class ReorderBuffer(Generic[T]):
    """
    Holds out-of-order completions until they can be released contiguously.

    States per index: not yet completed → held → released. An index can be
    completed exactly once.
    """

    def __init__(self, start_index: int = 0):
        self.next_index = start_index
        self._held: Dict[int, T] = {}

    def complete(self, index: int, item: T) -> List[T]:
        """Record a completion and return every item now due, in index order."""
        if index < self.next_index or index in self._held:
            raise ValueError(f"Index {index} already completed")
        self._held[index] = item

        released: List[T] = []
        while self.next_index in self._held:
            released.append(self._held.pop(self.next_index))
            self.next_index += 1
        return released

    @property
    def held_count(self) -> int:
        return len(self._held)


# ==============================================================================
# Dispatcher
# ==============================================================================


class SynthesisDispatcher:
    """One dispatcher per chat turn."""

    def __init__(
        self,
        synthesizer: SpeechSynthesizer,
        emit: EmitFn,
        voice: Optional[str] = None,
        level_window_ms: Optional[int] = None,
        session_id: Optional[str] = None,
    ):
        self._synthesizer = synthesizer
        self._emit = emit
        self._voice = voice
        self._level_window_ms = level_window_ms or settings.TTS_LEVEL_WINDOW_MS
        self._session_id = session_id

        self._reorder: ReorderBuffer[SynthesisOutcome] = ReorderBuffer()
        self._emit_lock = asyncio.Lock()
        self._tasks: List[asyncio.Task] = []
        self._next_submit_index = 0

        self.emitted_indices: List[int] = []
        self.failures = 0

    @property
    def provider(self) -> str:
        return getattr(self._synthesizer, "provider", "unknown")

    def submit(self, sentence: Sentence) -> None:
        """Start synthesizing ``sentence``; indices must be submitted 0, 1, 2, ..."""
        if sentence.index != self._next_submit_index:
            raise ValueError(f"Expected sentence index {self._next_submit_index}, got {sentence.index}")
        self._next_submit_index += 1
        self._tasks.append(asyncio.create_task(self._run(sentence)))

    async def _run(self, sentence: Sentence) -> None:
        outcome = await self._synthesize(sentence)
        async with self._emit_lock:
            for ready in self._reorder.complete(sentence.index, outcome):
                await self._emit_outcome(ready)

    async def _synthesize(self, sentence: Sentence) -> SynthesisOutcome:
        start = time.perf_counter()
        try:
            audio = await self._synthesizer.synthesize(sentence.text, self._voice)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            error = as_voice_error(e, TTS_001, provider=self.provider, session_id=self._session_id)
            record_voice_error(error.error_code, provider=self.provider)
            return SynthesisOutcome(sentence=sentence, error=error)

        latency_ms = int((time.perf_counter() - start) * 1000)
        try:
            levels = levels_from_wav(audio, self._level_window_ms)
        except WavFormatError as e:
            logger.warning("tts_levels_unavailable", sentence_index=sentence.index, error=str(e))
            levels = LevelEnvelope(levels=[], window_ms=self._level_window_ms)

        return SynthesisOutcome(sentence=sentence, audio=audio, levels=levels, latency_ms=latency_ms)

    async def _emit_outcome(self, outcome: SynthesisOutcome) -> None:
        index = outcome.sentence.index
        if outcome.ok:
            await self._emit(
                OutboundType.TTS_LEVELS,
                {"sentenceIndex": index, "winMs": outcome.levels.window_ms, "levels": outcome.levels.levels},
            )
            await self._emit(
                OutboundType.TTS_CHUNK,
                {
                    "sentenceIndex": index,
                    "mime": getattr(self._synthesizer, "mime", "audio/wav"),
                    "audioBase64": base64.b64encode(outcome.audio).decode("ascii"),
                },
            )
            voice_log.tts_chunk(
                session_id=self._session_id,
                sentence_index=index,
                chunk_size_bytes=len(outcome.audio),
                elapsed_ms=outcome.latency_ms,
                provider=self.provider,
            )
        else:
            self.failures += 1
            await self._emit(OutboundType.TTS_ERROR, {"sentenceIndex": index, **outcome.error.to_event_data()})
        self.emitted_indices.append(index)

    async def drain(self) -> None:
        """Wait until every submitted sentence has been emitted."""
        if not self._tasks:
            return
        results = await asyncio.gather(*self._tasks, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                logger.error("tts_dispatch_failed", error=str(result), session_id=self._session_id)

    async def cancel(self) -> None:
        """Cancel outstanding synthesis jobs (turn teardown)."""
        pending = [task for task in self._tasks if not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.info("tts_jobs_cancelled", count=len(pending), session_id=self._session_id)

    def get_stats(self) -> dict:
        return {
            "submitted": self._next_submit_index,
            "emitted": len(self.emitted_indices),
            "held": self._reorder.held_count,
            "failures": self.failures,
            "provider": self.provider,
        }
