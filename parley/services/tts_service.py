"""
Text-to-Speech Providers

Sentence-level speech synthesis returning a complete WAV payload per call.

Providers:
- piper: local neural TTS run as a subprocess (voice models on disk)
- fishspeech: Fish-Speech HTTP server

Both run under the TTS circuit breaker. Piper runs are bounded by
``TTS_TIMEOUT_SEC`` and killed on timeout or when the turn is torn down.
"""

import os
import time
from dataclasses import dataclass
from typing import List, Optional, Protocol

import httpx

from parley.core.config import settings
from parley.core.logging import get_logger
from parley.core.metrics import tts_synthesis_seconds
from parley.core.resilience import breaker_tracking, ensure_breaker_closed, retry_http_operation, tts_breaker
from parley.core.voice_errors import TTS_001, TTS_002, VoiceError
from parley.services.subprocess_runner import run_process

logger = get_logger(__name__)

WAV_MIME = "audio/wav"


class SpeechSynthesizer(Protocol):
    provider: str
    mime: str

    async def synthesize(self, text: str, voice: Optional[str] = None) -> bytes:
        ...


@dataclass
class PiperProsody:
    """Piper prosody flags"""

    length_scale: float = 1.08  # >1 is slower
    noise_scale: float = 0.33
    noise_w_scale: float = 0.70
    sentence_silence: float = 0.18  # seconds of silence after each sentence

    def to_args(self) -> List[str]:
        return [
            "--length-scale",
            str(self.length_scale),
            "--noise-scale",
            str(self.noise_scale),
            "--noise-w-scale",
            str(self.noise_w_scale),
            "--sentence-silence",
            str(self.sentence_silence),
        ]


class PiperSynthesizer:
    """Runs ``piper --model <voice>.onnx --config <voice>.onnx.json --output_file -``."""

    provider = "piper"
    mime = WAV_MIME

    def __init__(
        self,
        piper_bin: Optional[str] = None,
        voices_dir: Optional[str] = None,
        default_voice: Optional[str] = None,
        prosody: Optional[PiperProsody] = None,
        timeout_sec: Optional[float] = None,
    ):
        self.piper_bin = piper_bin or settings.PIPER_BIN
        self.voices_dir = voices_dir or settings.PIPER_VOICES_DIR
        self.default_voice = default_voice or settings.TTS_DEFAULT_VOICE
        self.prosody = prosody or PiperProsody(
            length_scale=settings.PIPER_LENGTH_SCALE,
            noise_scale=settings.PIPER_NOISE_SCALE,
            noise_w_scale=settings.PIPER_NOISE_W_SCALE,
            sentence_silence=settings.PIPER_SENTENCE_SILENCE,
        )
        self.timeout_sec = timeout_sec or settings.TTS_TIMEOUT_SEC

    def voice_paths(self, voice: str):
        # Voice ids are file stems; strip any directory components
        stem = os.path.basename(voice)
        model = os.path.join(self.voices_dir, f"{stem}.onnx")
        return model, f"{model}.json"

    async def synthesize(self, text: str, voice: Optional[str] = None) -> bytes:
        voice = voice or self.default_voice
        model, config = self.voice_paths(voice)
        if not os.path.exists(model) or not os.path.exists(config):
            raise VoiceError(TTS_002, message=f"Piper voice '{voice}' not found", provider=self.provider)

        ensure_breaker_closed(tts_breaker, TTS_001, self.provider)

        start = time.perf_counter()
        async with breaker_tracking(tts_breaker):
            audio = await run_process(
                [self.piper_bin, "--model", model, "--config", config, "--output_file", "-", *self.prosody.to_args()],
                input_data=text.encode("utf-8"),
                timeout=self.timeout_sec,
                error_code=TTS_001,
                provider=self.provider,
            )
            if not audio:
                raise VoiceError(TTS_001, message="Piper produced no audio", provider=self.provider)

        tts_synthesis_seconds.labels(provider=self.provider).observe(time.perf_counter() - start)
        return audio


class FishSpeechSynthesizer:
    """POSTs ``{text}`` to ``{base}/api/tts`` and returns the WAV body."""

    provider = "fishspeech"
    mime = WAV_MIME

    def __init__(self, base_url: Optional[str] = None, timeout_sec: Optional[float] = None):
        self.base_url = (base_url or settings.FISHSPEECH_URL).rstrip("/")
        self.timeout_sec = timeout_sec or settings.TTS_TIMEOUT_SEC
        self._http_client: Optional[httpx.AsyncClient] = None

    async def _get_http_client(self) -> httpx.AsyncClient:
        """Get or create the persistent HTTP client."""
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(
                timeout=self.timeout_sec,
                limits=httpx.Limits(max_keepalive_connections=5, max_connections=10),
            )
        return self._http_client

    @retry_http_operation()
    async def _post(self, text: str) -> httpx.Response:
        client = await self._get_http_client()
        return await client.post(f"{self.base_url}/api/tts", json={"text": text})

    async def synthesize(self, text: str, voice: Optional[str] = None) -> bytes:
        ensure_breaker_closed(tts_breaker, TTS_001, self.provider)

        start = time.perf_counter()
        async with breaker_tracking(tts_breaker):
            try:
                response = await self._post(text)
            except httpx.HTTPError as e:
                raise VoiceError(TTS_001, provider=self.provider, original_error=e) from e

            if response.status_code != 200:
                logger.error(
                    "Fish-Speech synthesis failed",
                    status_code=response.status_code,
                    error=response.text[:200],
                )
                raise VoiceError(
                    TTS_001, message=f"Fish-Speech returned {response.status_code}", provider=self.provider
                )

        tts_synthesis_seconds.labels(provider=self.provider).observe(time.perf_counter() - start)
        return response.content

    async def close(self):
        """Close the HTTP client."""
        if self._http_client and not self._http_client.is_closed:
            await self._http_client.aclose()
            self._http_client = None


def create_synthesizer(provider: Optional[str] = None) -> SpeechSynthesizer:
    provider = (provider or settings.TTS_PROVIDER).lower()
    if provider == "fishspeech":
        return FishSpeechSynthesizer()
    if provider != "piper":
        logger.warning("Unknown TTS provider %s, falling back to piper", provider)
    return PiperSynthesizer()
