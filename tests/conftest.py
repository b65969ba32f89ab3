"""
Pytest configuration and shared fixtures for the Parley test suite.

Settings are read from the environment at import time, so defaults are
applied before any ``parley`` module is imported. External backends (OpenAI,
ffmpeg, piper, the STT microservice) are never reached; tests use the stubs
below.
"""

import asyncio
import math
import os
import struct
from typing import AsyncIterator, Dict, List, Optional

os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DEBUG", "false")
os.environ.setdefault("VOICE_LOG_LEVEL", "MINIMAL")
# Never reach real backends, even when the shell exports credentials
os.environ["KNOWLEDGE_DIR"] = ""
os.environ["OPENAI_API_KEY"] = ""

import pytest  # noqa: E402

from parley.core.resilience import openai_breaker, stt_breaker, tts_breaker  # noqa: E402
from parley.core.voice_errors import STT_004, VoiceError  # noqa: E402
from parley.services.realtime_stt_service import TRANSCRIPTION_COMPLETED  # noqa: E402

SAMPLE_RATE = 16000


def sine_pcm(duration_ms: int, amplitude: float = 0.3, freq: float = 440.0, sample_rate: int = SAMPLE_RATE) -> bytes:
    """Raw PCM16 mono sine tone."""
    count = int(sample_rate * duration_ms / 1000)
    return struct.pack(
        f"<{count}h",
        *(int(amplitude * 32767 * math.sin(2 * math.pi * freq * i / sample_rate)) for i in range(count)),
    )


def silence_pcm(duration_ms: int, sample_rate: int = SAMPLE_RATE) -> bytes:
    """Raw PCM16 mono digital silence."""
    return b"\x00\x00" * int(sample_rate * duration_ms / 1000)


def wav_from_pcm(pcm: bytes, sample_rate: int = SAMPLE_RATE, channels: int = 1) -> bytes:
    """Wrap PCM16 bytes in a minimal RIFF/WAVE header."""
    header = struct.pack(
        "<4sI4s4sIHHIIHH4sI",
        b"RIFF",
        36 + len(pcm),
        b"WAVE",
        b"fmt ",
        16,
        1,
        channels,
        sample_rate,
        sample_rate * 2 * channels,
        2 * channels,
        16,
        b"data",
        len(pcm),
    )
    return header + pcm


# ==============================================================================
# Backend stubs
# ==============================================================================


class StubTokenStreamer:
    """Yields a fixed list of deltas, optionally failing after ``fail_after`` deltas."""

    def __init__(self, deltas: List[str], fail_after: Optional[int] = None):
        self.deltas = deltas
        self.fail_after = fail_after
        self.calls: List[List[Dict[str, str]]] = []

    async def stream_chat(self, messages) -> AsyncIterator[str]:
        self.calls.append(list(messages))
        for i, delta in enumerate(self.deltas):
            if self.fail_after is not None and i >= self.fail_after:
                raise RuntimeError("stream interrupted")
            yield delta
        if self.fail_after is not None and self.fail_after >= len(self.deltas):
            raise RuntimeError("stream interrupted")


class StubSynthesizer:
    provider = "stub"
    mime = "audio/wav"

    def __init__(self, fail_on: Optional[set] = None):
        self.fail_on = fail_on or set()
        self.calls: List[str] = []

    async def synthesize(self, text: str, voice: Optional[str] = None) -> bytes:
        self.calls.append(text)
        if text in self.fail_on:
            raise RuntimeError(f"cannot synthesize {text!r}")
        return wav_from_pcm(sine_pcm(120))


class StubTranscoder:
    def __init__(self):
        self.calls: List[tuple] = []

    async def to_wav_pcm16(self, data: bytes, mime: Optional[str] = None) -> bytes:
        self.calls.append((data, mime))
        return wav_from_pcm(silence_pcm(100))


class StubTranscriber:
    def __init__(self, text: str = "hello"):
        self.text = text
        self.calls: List[tuple] = []

    async def transcribe(self, wav: bytes, lang: Optional[str] = None) -> str:
        self.calls.append((wav, lang))
        return self.text


class StubEmbedder:
    """Embeds text as a bag of three keyword counts."""

    KEYWORDS = ("privacy", "surveillance", "music")

    async def embed(self, text: str) -> List[float]:
        lowered = text.lower()
        return [float(lowered.count(word)) for word in self.KEYWORDS]


class FakeRealtimeBackend:
    """In-memory realtime transcription socket; each commit is acknowledged with "word<n>"."""

    provider = "fake-realtime"

    def __init__(self, auto_ack: bool = True, fail_connect: bool = False, fail_append_after: Optional[int] = None):
        self.auto_ack = auto_ack
        self.fail_connect = fail_connect
        self.fail_append_after = fail_append_after
        self.language = None
        self.appended = 0
        self.commits = 0
        self.max_outstanding = 0
        self.closed = False
        self.gate = None
        self._events: asyncio.Queue = asyncio.Queue()

    async def connect(self, language):
        if self.fail_connect:
            raise VoiceError(STT_004, message="unreachable", provider=self.provider)
        self.language = language

    async def append(self, pcm):
        if self.fail_append_after is not None and self.appended >= self.fail_append_after:
            raise ConnectionError("upstream closed")
        self.appended += len(pcm)

    async def commit(self):
        self.commits += 1
        if self.gate is not None:
            self.max_outstanding = max(self.max_outstanding, self.gate.outstanding)
        if self.auto_ack:
            await self._events.put({"type": TRANSCRIPTION_COMPLETED, "transcript": f"word{self.commits}"})

    async def push_event(self, event):
        await self._events.put(event)

    async def events(self):
        while True:
            event = await self._events.get()
            if event is None:
                return
            yield event

    async def close(self):
        self.closed = True
        await self._events.put(None)


class PassThroughTranscoder:
    def __init__(self, on_pcm):
        self.on_pcm = on_pcm
        self.error = None
        self.started = False
        self.finished = False
        self.closed = False

    async def start(self):
        self.started = True

    async def write(self, data):
        await self.on_pcm(data)

    async def finish(self, timeout):
        self.finished = True
        return True

    async def close(self):
        self.closed = True


@pytest.fixture(autouse=True)
def closed_breakers():
    """Failures recorded by one test must not trip a breaker for the next."""
    breakers = (openai_breaker, tts_breaker, stt_breaker)
    for breaker in breakers:
        breaker.close()
    yield
    for breaker in breakers:
        breaker.close()


@pytest.fixture
def token_streamer():
    return StubTokenStreamer(["Hi ", "there."])


@pytest.fixture
def synthesizer():
    return StubSynthesizer()


@pytest.fixture
def transcoder():
    return StubTranscoder()


@pytest.fixture
def transcriber():
    return StubTranscriber()
