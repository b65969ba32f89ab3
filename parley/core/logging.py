"""
Structured logging configuration using structlog

Includes voice-specific logging with configurable verbosity levels:
- MINIMAL: Errors only
- STANDARD: + Session lifecycle (connect/disconnect/turn state changes)
- VERBOSE: + Latency measurements (first token, synthesis, transcription)
- DEBUG: + VAD transitions
"""

import logging
import sys
from enum import IntEnum
from typing import Dict, Optional

import structlog
from parley.core.config import settings


class VoiceLogLevel(IntEnum):
    """Voice logging verbosity levels.

    Higher values include all lower level logs.
    """

    MINIMAL = 1  # Errors only
    STANDARD = 2  # + Session lifecycle
    VERBOSE = 3  # + Latency measurements
    DEBUG = 4  # + VAD transitions


_VOICE_LOG_LEVEL_MAP = {
    "MINIMAL": VoiceLogLevel.MINIMAL,
    "STANDARD": VoiceLogLevel.STANDARD,
    "VERBOSE": VoiceLogLevel.VERBOSE,
    "DEBUG": VoiceLogLevel.DEBUG,
}

_voice_log_level: VoiceLogLevel = _VOICE_LOG_LEVEL_MAP.get(settings.VOICE_LOG_LEVEL.upper(), VoiceLogLevel.STANDARD)


def configure_logging():
    """Configure structured logging for the application"""
    log_level = logging.DEBUG if settings.DEBUG else logging.INFO

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=log_level,
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer() if not settings.DEBUG else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str = None):
    """
    Get a structured logger instance

    Args:
        name: Logger name (usually __name__ of the module)

    Returns:
        Structured logger instance
    """
    return structlog.get_logger(name)


# =============================================================================
# Voice-Specific Logging Utilities
# =============================================================================


class VoiceLogger:
    """
    Session-scoped voice events gated by ``VOICE_LOG_LEVEL``.

    Every event carries the ``voice_log_level`` it was emitted at, so a
    log query can tell lifecycle lines from latency or VAD lines.
    """

    def __init__(self, name: str, level: Optional[VoiceLogLevel] = None):
        self._logger = structlog.get_logger(name)
        self._name = name
        self.level = level if level is not None else _voice_log_level

    def _log(self, min_level: VoiceLogLevel, event: str, method: str = "info", **fields):
        if self.level < min_level:
            return
        for key in ("duration_ms", "elapsed_ms"):
            if fields.get(key) is not None:
                fields[key] = round(fields[key], 2)
        getattr(self._logger, method)(event, voice_log_level=min_level.name, **fields)

    def error(self, event: str, session_id: Optional[str] = None, **kwargs):
        """Always logged, whatever the verbosity."""
        self._log(VoiceLogLevel.MINIMAL, event, method="error", session_id=session_id, **kwargs)

    def session_start(self, session_id: str, **kwargs):
        self._log(VoiceLogLevel.STANDARD, "voice_session_start", session_id=session_id, **kwargs)

    def session_end(self, session_id: str, duration_ms: float, turn_count: int = 0, **kwargs):
        self._log(
            VoiceLogLevel.STANDARD,
            "voice_session_end",
            session_id=session_id,
            duration_ms=duration_ms,
            turn_count=turn_count,
            **kwargs,
        )

    def state_change(self, session_id: str, from_state: str, to_state: str, trigger: Optional[str] = None, **kwargs):
        self._log(
            VoiceLogLevel.STANDARD,
            "voice_state_change",
            session_id=session_id,
            from_state=from_state,
            to_state=to_state,
            trigger=trigger,
            **kwargs,
        )

    def latency(self, stage: str, duration_ms: float, session_id: Optional[str] = None, **kwargs):
        self._log(VoiceLogLevel.VERBOSE, "voice_latency", stage=stage, duration_ms=duration_ms, session_id=session_id, **kwargs)

    def stt_result(self, session_id: str, transcript_length: int, duration_ms: float, provider: str, **kwargs):
        self._log(
            VoiceLogLevel.VERBOSE,
            "voice_stt_result",
            session_id=session_id,
            transcript_length=transcript_length,
            duration_ms=duration_ms,
            provider=provider,
            **kwargs,
        )

    def tts_chunk(self, session_id: str, sentence_index: int, chunk_size_bytes: int, elapsed_ms: float, provider: str):
        self._log(
            VoiceLogLevel.VERBOSE,
            "voice_tts_chunk",
            session_id=session_id,
            sentence_index=sentence_index,
            chunk_size_bytes=chunk_size_bytes,
            elapsed_ms=elapsed_ms,
            provider=provider,
        )

    def vad_event(self, session_id: str, event_type: str, **kwargs):
        # "speech_start" | "end_of_turn"
        self._log(VoiceLogLevel.DEBUG, "voice_vad_event", method="debug", session_id=session_id, event_type=event_type, **kwargs)


_voice_loggers: Dict[str, VoiceLogger] = {}


def get_voice_logger(name: str = None) -> VoiceLogger:
    """Shared VoiceLogger per module name."""
    key = name or "__root__"
    if key not in _voice_loggers:
        _voice_loggers[key] = VoiceLogger(key)
    return _voice_loggers[key]
