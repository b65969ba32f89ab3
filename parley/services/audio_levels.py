"""
WAV parsing and loudness envelopes for synthesized speech.

The envelope is a list of normalized levels, one per fixed window, used by
clients to animate a speaking indicator in sync with playback.
"""

import struct
from dataclasses import dataclass
from typing import List, Optional

import numpy as np

# Keeps quiet clips from being scaled up to full range
LEVEL_REFERENCE_FLOOR = 0.08
LEVEL_GAIN = 1.5


class WavFormatError(ValueError):
    pass


@dataclass
class PcmAudio:
    samples: np.ndarray  # float64 mono, [-1, 1]
    sample_rate: int

    @property
    def duration_ms(self) -> float:
        return self.samples.size * 1000.0 / self.sample_rate if self.sample_rate else 0.0


@dataclass
class LevelEnvelope:
    levels: List[float]
    window_ms: int


def parse_wav_pcm16(data: bytes) -> PcmAudio:
    """
    Parse a RIFF/WAVE PCM16 payload, downmixing multi-channel audio to mono.

    Streamed WAV output (e.g. piper writing to stdout) may carry placeholder
    chunk sizes, so the data chunk is clamped to the bytes actually present.

    Raises:
        WavFormatError: if the payload is not 16-bit PCM WAV
    """
    if len(data) < 12 or data[:4] != b"RIFF" or data[8:12] != b"WAVE":
        raise WavFormatError("Not a RIFF/WAVE payload")

    offset = 12
    channels: Optional[int] = None
    sample_rate: Optional[int] = None
    pcm: Optional[bytes] = None

    while offset + 8 <= len(data):
        chunk_id = data[offset : offset + 4]
        (chunk_size,) = struct.unpack("<I", data[offset + 4 : offset + 8])
        body_start = offset + 8
        body_end = min(body_start + chunk_size, len(data))

        if chunk_id == b"fmt ":
            if body_end - body_start < 16:
                raise WavFormatError("Truncated fmt chunk")
            audio_format, channels, sample_rate, _, _, bits_per_sample = struct.unpack(
                "<HHIIHH", data[body_start : body_start + 16]
            )
            if audio_format != 1:
                raise WavFormatError(f"Unsupported WAV format {audio_format} (PCM only)")
            if bits_per_sample != 16:
                raise WavFormatError(f"Unsupported bit depth {bits_per_sample} (16-bit only)")
        elif chunk_id == b"data":
            pcm = data[body_start:body_end]
            break

        # Chunks are word aligned
        offset = body_start + chunk_size + (chunk_size & 1)

    if channels is None or sample_rate is None:
        raise WavFormatError("Missing fmt chunk")
    if pcm is None:
        raise WavFormatError("Missing data chunk")
    if channels < 1:
        raise WavFormatError("Invalid channel count")

    frame_bytes = 2 * channels
    usable = len(pcm) - len(pcm) % frame_bytes
    samples = np.frombuffer(pcm[:usable], dtype="<i2").astype(np.float64) / 32768.0
    if channels > 1:
        samples = samples.reshape(-1, channels).mean(axis=1)

    return PcmAudio(samples=samples, sample_rate=sample_rate)


def rms_levels(audio: PcmAudio, window_ms: int = 40, hop_ms: Optional[int] = None) -> List[float]:
    """Normalized RMS per window, clamped to [0, 1]."""
    window = max(1, round(window_ms / 1000 * audio.sample_rate))
    hop = max(1, round((hop_ms or window_ms) / 1000 * audio.sample_rate))
    samples = audio.samples
    if samples.size < window:
        return []

    starts = np.arange(0, samples.size - window + 1, hop)
    rms = np.array([np.sqrt(np.mean(samples[s : s + window] ** 2)) for s in starts])

    reference = max(float(rms.max(initial=1e-6)), LEVEL_REFERENCE_FLOOR)
    levels = np.minimum(1.0, rms / reference * LEVEL_GAIN)
    return [round(float(level), 4) for level in levels]


def levels_from_wav(data: bytes, window_ms: int = 40) -> LevelEnvelope:
    """Level envelope for a WAV payload."""
    return LevelEnvelope(levels=rms_levels(parse_wav_pcm16(data), window_ms=window_ms), window_ms=window_ms)


def build_wav_pcm16(samples: np.ndarray, sample_rate: int = 16000) -> bytes:
    """Encode mono float samples in [-1, 1] as a PCM16 WAV payload."""
    pcm = (np.clip(samples, -1.0, 1.0) * 32767).astype("<i2").tobytes()
    header = struct.pack(
        "<4sI4s4sIHHIIHH4sI",
        b"RIFF",
        36 + len(pcm),
        b"WAVE",
        b"fmt ",
        16,
        1,
        1,
        sample_rate,
        sample_rate * 2,
        2,
        16,
        b"data",
        len(pcm),
    )
    return header + pcm
