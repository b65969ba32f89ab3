"""
Batch Speech-to-Text Service

Sends a complete 16 kHz mono WAV to the transcription microservice
(``STT_HTTP_URL``) as a multipart upload and returns the recognized text.

Expected response: ``{"text": "..."}``
"""

import time
from typing import Optional, Protocol

import httpx

from parley.core.config import settings
from parley.core.logging import get_logger
from parley.core.resilience import breaker_tracking, ensure_breaker_closed, retry_http_operation, stt_breaker
from parley.core.voice_errors import STT_002, VoiceError

logger = get_logger(__name__)


class Transcriber(Protocol):
    async def transcribe(self, wav: bytes, lang: Optional[str] = None) -> str:
        ...


class HttpTranscriber:
    provider = "http-stt"

    def __init__(self, url: Optional[str] = None, timeout_sec: Optional[float] = None):
        self.url = url or settings.STT_HTTP_URL
        self.timeout_sec = timeout_sec or settings.STT_TIMEOUT_SEC
        self._http_client: Optional[httpx.AsyncClient] = None

    async def _get_http_client(self) -> httpx.AsyncClient:
        """Get or create the persistent HTTP client."""
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(timeout=self.timeout_sec)
        return self._http_client

    @retry_http_operation()
    async def _post(self, wav: bytes, lang: Optional[str]) -> httpx.Response:
        client = await self._get_http_client()
        return await client.post(
            self.url,
            files={"file": ("audio.wav", wav, "audio/wav")},
            data={"lang": lang} if lang else None,
        )

    async def transcribe(self, wav: bytes, lang: Optional[str] = None) -> str:
        """
        Transcribe a WAV payload.

        Raises:
            VoiceError: STT_002 on transport failure, non-200 status or a malformed body
        """
        ensure_breaker_closed(stt_breaker, STT_002, self.provider)

        start = time.perf_counter()
        async with breaker_tracking(stt_breaker):
            try:
                response = await self._post(wav, lang)
            except httpx.HTTPError as e:
                raise VoiceError(STT_002, provider=self.provider, original_error=e) from e

            if response.status_code != 200:
                raise VoiceError(
                    STT_002,
                    message=f"Transcription service returned {response.status_code}",
                    provider=self.provider,
                    body=response.text[:200],
                )

        try:
            payload = response.json()
        except ValueError as e:
            raise VoiceError(STT_002, message="Transcription response is not JSON", provider=self.provider) from e

        if not isinstance(payload, dict):
            raise VoiceError(STT_002, message="Transcription response is not an object", provider=self.provider)
        # Silence transcribes to an empty or missing text field
        text = payload.get("text") or ""
        if not isinstance(text, str):
            raise VoiceError(STT_002, message="Transcription text is not a string", provider=self.provider)

        logger.debug(
            "transcription_complete",
            audio_bytes=len(wav),
            text_length=len(text),
            latency_ms=round((time.perf_counter() - start) * 1000, 1),
        )
        return text.strip()

    async def close(self):
        """Close the HTTP client."""
        if self._http_client and not self._http_client.is_closed:
            await self._http_client.aclose()
            self._http_client = None
