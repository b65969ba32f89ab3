"""
Audio Transcoding Service

Converts browser-recorded audio (webm/ogg/wav) to canonical PCM using ffmpeg.

Features:
- Batch transcode to 16 kHz mono PCM16 WAV for one-shot transcription
- Streaming transcode (stdin → stdout) to raw s16le for the realtime path
- Bounded timeouts with forced kill of the ffmpeg process
"""

import asyncio
import os
import tempfile
from typing import Awaitable, Callable, Optional

from parley.core.config import settings
from parley.core.logging import get_logger
from parley.core.voice_errors import STT_001, VoiceError
from parley.services.subprocess_runner import kill_process, run_process

logger = get_logger(__name__)

TARGET_SAMPLE_RATE = 16000


def extension_for_mime(mime: Optional[str]) -> str:
    """Container extension ffmpeg should see for a MediaRecorder mime type."""
    mime = (mime or "").lower()
    if "ogg" in mime:
        return "ogg"
    if "wav" in mime:
        return "wav"
    return "webm"


def _write_file(path: str, data: bytes) -> None:
    with open(path, "wb") as f:
        f.write(data)


def _read_file(path: str) -> bytes:
    with open(path, "rb") as f:
        return f.read()


class AudioTranscoder:
    """Batch ffmpeg transcoder."""

    def __init__(self, ffmpeg_bin: Optional[str] = None, timeout_sec: Optional[float] = None):
        self.ffmpeg_bin = ffmpeg_bin or settings.FFMPEG_BIN
        self.timeout_sec = timeout_sec or settings.TRANSCODE_TIMEOUT_SEC

    async def to_wav_pcm16(self, data: bytes, mime: Optional[str] = None) -> bytes:
        """
        Transcode compressed audio to 16 kHz mono PCM16 WAV.

        Raises:
            VoiceError: STT_001 on ffmpeg failure, TIMEOUT_001 on timeout
        """
        if not data:
            raise VoiceError(STT_001, message="No audio received", provider="ffmpeg")

        ext = extension_for_mime(mime)
        with tempfile.TemporaryDirectory(prefix="parley-stt-") as workdir:
            src = os.path.join(workdir, f"in.{ext}")
            dst = os.path.join(workdir, "out.wav")
            await asyncio.to_thread(_write_file, src, data)

            await run_process(
                [
                    self.ffmpeg_bin,
                    "-hide_banner",
                    "-loglevel",
                    "error",
                    "-y",
                    "-i",
                    src,
                    "-ac",
                    "1",
                    "-ar",
                    str(TARGET_SAMPLE_RATE),
                    dst,
                ],
                timeout=self.timeout_sec,
                error_code=STT_001,
                provider="ffmpeg",
            )

            if not os.path.exists(dst):
                raise VoiceError(STT_001, message="ffmpeg produced no output", provider="ffmpeg")
            wav = await asyncio.to_thread(_read_file, dst)

        logger.debug("audio_transcoded", input_bytes=len(data), output_bytes=len(wav), container=ext)
        return wav


class StreamingTranscoder:
    """
    Long-running ffmpeg pipe for the realtime STT path.

    Compressed chunks written with ``write`` come back as raw s16le 16 kHz
    mono PCM through the ``on_pcm`` callback, in order.
    """

    def __init__(
        self,
        on_pcm: Callable[[bytes], Awaitable[None]],
        ffmpeg_bin: Optional[str] = None,
        read_size: int = 3200,
    ):
        self.on_pcm = on_pcm
        self.ffmpeg_bin = ffmpeg_bin or settings.FFMPEG_BIN
        self.read_size = read_size
        self._proc: Optional[asyncio.subprocess.Process] = None
        self._reader: Optional[asyncio.Task] = None
        self.error: Optional[Exception] = None
        self.bytes_in = 0
        self.bytes_out = 0

    async def start(self) -> None:
        try:
            self._proc = await asyncio.create_subprocess_exec(
                self.ffmpeg_bin,
                "-hide_banner",
                "-loglevel",
                "error",
                "-i",
                "pipe:0",
                "-f",
                "s16le",
                "-ac",
                "1",
                "-ar",
                str(TARGET_SAMPLE_RATE),
                "pipe:1",
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except FileNotFoundError as e:
            raise VoiceError(STT_001, message=f"{self.ffmpeg_bin} is not installed", provider="ffmpeg") from e
        self._reader = asyncio.create_task(self._read_loop())

    async def _read_loop(self) -> None:
        stdout = self._proc.stdout
        while True:
            chunk = await stdout.read(self.read_size)
            if not chunk:
                break
            self.bytes_out += len(chunk)
            if self.error is not None:
                continue
            try:
                await self.on_pcm(chunk)
            except Exception as e:
                # Keep draining stdout so ffmpeg never blocks on a full pipe
                self.error = e
                logger.error("streaming_transcode_consumer_failed", error=str(e), bytes_out=self.bytes_out, exc_info=True)

    async def write(self, data: bytes) -> None:
        if not self._proc or self._proc.stdin.is_closing():
            return
        self.bytes_in += len(data)
        self._proc.stdin.write(data)
        try:
            await self._proc.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            raise VoiceError(STT_001, message="ffmpeg stopped accepting audio", provider="ffmpeg", original_error=e)

    async def finish(self, timeout: float) -> bool:
        """Close stdin and wait for remaining PCM. Returns False on timeout."""
        if not self._proc:
            return True
        if not self._proc.stdin.is_closing():
            self._proc.stdin.close()
        if not self._reader:
            return True
        try:
            await asyncio.wait_for(asyncio.shield(self._reader), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("streaming_transcode_drain_timeout", timeout=timeout, bytes_in=self.bytes_in)
            return False
        return True

    async def close(self, timeout: float = 2.0) -> None:
        """Stop the reader and kill ffmpeg, waiting at most ``timeout`` for it to exit."""
        if self._reader and not self._reader.done():
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
        if not self._proc or self._proc.returncode is not None:
            return

        if not self._proc.stdin.is_closing():
            self._proc.stdin.close()
        kill_process(self._proc)
        try:
            await asyncio.wait_for(self._discard_output_and_wait(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("streaming_transcode_exit_timeout", pid=self._proc.pid, timeout=timeout)

    async def _discard_output_and_wait(self) -> None:
        # A paused stdout transport never sees EOF, and wait() needs the pipe closed
        while await self._proc.stdout.read(65536):
            pass
        await self._proc.wait()
