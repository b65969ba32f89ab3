"""
Voice Activity Detection (VAD) Service

End-of-turn detection for the realtime STT path.

Features:
- Energy (RMS) and zero-crossing-rate features per PCM frame
- Adaptive noise floor (fast during warm-up, then slow and only on unvoiced frames)
- Hysteresis threshold: max(base, noise_floor * multiplier) * voice_hysteresis
- Silence accumulation only after real speech and a minimum elapsed time
- Grace window plus pre-roll delay before end-of-turn is acted on
- Hard maximum turn duration

The classifier is a pure function ``step(state, features, config)`` over
immutable records so it can be exercised without audio hardware.
``EndOfTurnDetector`` wraps it for a raw PCM byte stream.
"""

from dataclasses import dataclass, replace
from enum import Enum
from typing import List, Optional, Tuple

import numpy as np

from parley.core.config import settings
from parley.core.logging import get_logger

logger = get_logger(__name__)


class VADPhase(str, Enum):
    """Detector phase after a frame"""

    WAITING = "waiting"  # no speech yet this turn
    SPEAKING = "speaking"
    TRAILING = "trailing"  # speech seen, silence accumulating
    ARMING = "arming"  # end condition met, grace window running
    END_OF_TURN = "end_of_turn"


@dataclass(frozen=True)
class VADConfig:
    """Configuration for Voice Activity Detection"""

    sample_rate: int = 16000
    frame_ms: int = 20

    base_threshold: float = 0.012
    hysteresis_multiplier: float = 3.2
    voice_hysteresis: float = 1.05

    rms_alpha: float = 0.2
    zcr_alpha: float = 0.2
    noise_alpha: float = 0.05
    warmup_noise_alpha: float = 0.2
    noise_warmup_ms: float = 300
    initial_noise_floor: float = 0.01

    silence_ms: float = 1600
    min_elapsed_ms: float = 1000
    min_voice_frames: int = 4
    min_consecutive_silent_frames: int = 6
    hard_max_ms: float = 45000
    dt_clamp_ms: float = 100

    # High zero-crossing rate (fricatives, whispers) slows silence accumulation
    zcr_gate_threshold: float = 0.2
    zcr_gate_factor: float = 0.5

    grace_ms: float = 300
    preroll_ms: float = 400

    @property
    def frame_bytes(self) -> int:
        return int(self.sample_rate * self.frame_ms / 1000) * 2

    @classmethod
    def from_settings(cls) -> "VADConfig":
        return cls(
            frame_ms=settings.VAD_FRAME_MS,
            base_threshold=settings.VAD_BASE_THRESHOLD,
            hysteresis_multiplier=settings.VAD_HYSTERESIS_MULT,
            silence_ms=settings.VAD_SILENCE_MS,
            grace_ms=settings.VAD_GRACE_MS,
            preroll_ms=settings.VAD_PREROLL_MS,
        )


@dataclass(frozen=True)
class FrameFeatures:
    rms: float
    zcr: float
    duration_ms: float


@dataclass(frozen=True)
class VADState:
    """All mutable detector counters for one turn"""

    elapsed_ms: float = 0.0
    frames: int = 0
    rms_smooth: float = 0.0
    zcr_smooth: float = 0.0
    noise_floor: float = 0.01
    has_speech: bool = False
    voice_frames: int = 0
    silent_ms: float = 0.0
    silent_frames: int = 0
    pending_stop_at_ms: Optional[float] = None
    ended: bool = False


@dataclass(frozen=True)
class VADDecision:
    phase: VADPhase
    voiced: bool
    threshold: float
    speech_started: bool = False
    end_of_turn: bool = False
    # Delay to keep listening after end_of_turn before acting on it
    preroll_ms: float = 0.0
    reason: Optional[str] = None  # "silence" | "max_duration"


def initial_state(config: VADConfig, noise_floor: Optional[float] = None) -> VADState:
    """Fresh turn state, optionally carrying over a calibrated noise floor."""
    return VADState(noise_floor=config.initial_noise_floor if noise_floor is None else noise_floor)


def frame_features(frame: bytes, sample_rate: int = 16000) -> FrameFeatures:
    """RMS (scaled to [0, 1]) and zero-crossing rate of a PCM16 mono frame."""
    samples = np.frombuffer(frame[: len(frame) - len(frame) % 2], dtype="<i2").astype(np.float64) / 32768.0
    if samples.size == 0:
        return FrameFeatures(rms=0.0, zcr=0.0, duration_ms=0.0)
    rms = float(np.sqrt(np.mean(samples * samples)))
    signs = np.signbit(samples)
    zcr = float(np.count_nonzero(signs[1:] != signs[:-1])) / samples.size
    return FrameFeatures(rms=rms, zcr=zcr, duration_ms=samples.size * 1000.0 / sample_rate)


def step(state: VADState, features: FrameFeatures, config: VADConfig) -> Tuple[VADState, VADDecision]:
    """
    Classify one frame and compute the next state.

    Once a turn has ended the state is terminal; start a new turn with
    ``initial_state``.
    """
    if state.ended:
        return state, VADDecision(phase=VADPhase.END_OF_TURN, voiced=False, threshold=0.0)

    elapsed = state.elapsed_ms + max(features.duration_ms, 0.0)
    dt = min(max(features.duration_ms, 0.0), config.dt_clamp_ms)
    first = state.frames == 0

    if first:
        rms_smooth = features.rms
        zcr_smooth = features.zcr
    else:
        rms_smooth = (1 - config.rms_alpha) * state.rms_smooth + config.rms_alpha * features.rms
        zcr_smooth = (1 - config.zcr_alpha) * state.zcr_smooth + config.zcr_alpha * features.zcr

    # Warm-up calibrates on every frame; afterwards only silence moves the floor
    warmup = elapsed < config.noise_warmup_ms
    noise_floor = state.noise_floor
    if warmup:
        noise_floor = (1 - config.warmup_noise_alpha) * noise_floor + config.warmup_noise_alpha * features.rms

    threshold = max(config.base_threshold, noise_floor * config.hysteresis_multiplier)
    voiced = rms_smooth > threshold * config.voice_hysteresis

    if not warmup and not voiced:
        noise_floor = (1 - config.noise_alpha) * noise_floor + config.noise_alpha * features.rms

    has_speech = state.has_speech
    voice_frames = state.voice_frames
    silent_ms = state.silent_ms
    silent_frames = state.silent_frames
    pending_stop_at = state.pending_stop_at_ms
    speech_started = False
    hard_max = elapsed >= config.hard_max_ms

    if voiced:
        speech_started = not has_speech
        has_speech = True
        voice_frames += 1
        silent_ms = 0.0
        silent_frames = 0
        if not hard_max:
            pending_stop_at = None
    elif has_speech and voice_frames >= config.min_voice_frames and elapsed > config.min_elapsed_ms:
        gate = config.zcr_gate_factor if zcr_smooth > config.zcr_gate_threshold else 1.0
        silent_ms += dt * gate
        silent_frames += 1

    long_silence = silent_ms >= config.silence_ms and silent_frames >= config.min_consecutive_silent_frames

    phase = VADPhase.SPEAKING if voiced else (VADPhase.TRAILING if has_speech else VADPhase.WAITING)
    end_of_turn = False
    reason = None

    if long_silence or hard_max:
        reason = "silence" if long_silence else "max_duration"
        if pending_stop_at is None:
            pending_stop_at = elapsed + config.grace_ms
        phase = VADPhase.ARMING
        if elapsed >= pending_stop_at:
            end_of_turn = True
            phase = VADPhase.END_OF_TURN

    next_state = replace(
        state,
        elapsed_ms=elapsed,
        frames=state.frames + 1,
        rms_smooth=rms_smooth,
        zcr_smooth=zcr_smooth,
        noise_floor=noise_floor,
        has_speech=has_speech,
        voice_frames=voice_frames,
        silent_ms=silent_ms,
        silent_frames=silent_frames,
        pending_stop_at_ms=pending_stop_at,
        ended=end_of_turn,
    )
    decision = VADDecision(
        phase=phase,
        voiced=voiced,
        threshold=threshold,
        speech_started=speech_started,
        end_of_turn=end_of_turn,
        preroll_ms=config.preroll_ms if end_of_turn else 0.0,
        reason=reason,
    )
    return next_state, decision


class EndOfTurnDetector:
    """
    Streaming wrapper around ``step`` for raw PCM16 mono audio.

    Audio is re-framed into ``config.frame_ms`` frames; partial frames are kept
    until more audio arrives. After an end-of-turn decision the next frame
    starts a new turn with the calibrated noise floor carried over.
    """

    def __init__(self, config: Optional[VADConfig] = None):
        self.config = config or VADConfig.from_settings()
        self.state = initial_state(self.config)
        self._pending = b""
        self.turns_ended = 0

    def process(self, pcm: bytes) -> List[VADDecision]:
        """Feed PCM and return the notable decisions (speech start, end of turn)."""
        self._pending += pcm
        frame_bytes = self.config.frame_bytes
        events: List[VADDecision] = []

        while len(self._pending) >= frame_bytes:
            frame, self._pending = self._pending[:frame_bytes], self._pending[frame_bytes:]
            if self.state.ended:
                self.state = initial_state(self.config, noise_floor=self.state.noise_floor)
            self.state, decision = step(self.state, frame_features(frame, self.config.sample_rate), self.config)
            if decision.speech_started or decision.end_of_turn:
                events.append(decision)
            if decision.end_of_turn:
                self.turns_ended += 1
                logger.debug(
                    "vad_end_of_turn",
                    reason=decision.reason,
                    elapsed_ms=round(self.state.elapsed_ms, 1),
                    voice_frames=self.state.voice_frames,
                )
        return events

    def reset(self) -> None:
        self.state = initial_state(self.config)
        self._pending = b""

    def get_stats(self) -> dict:
        return {
            "elapsed_ms": round(self.state.elapsed_ms, 1),
            "noise_floor": round(self.state.noise_floor, 5),
            "rms_smooth": round(self.state.rms_smooth, 5),
            "has_speech": self.state.has_speech,
            "voice_frames": self.state.voice_frames,
            "silent_ms": round(self.state.silent_ms, 1),
            "turns_ended": self.turns_ended,
        }
