"""
Voice-specific error taxonomy for structured error tracking.

Provides an error classification system with:
- Error categories (CONNECTION, STT, TTS, LLM, RETRIEVAL, TIMEOUT, INTERNAL)
- Error codes with descriptions
- Recoverability flags
- Prometheus metrics integration

Errors raised from backend calls (generation, transcoding, synthesis,
transcription) are caught at the turn boundary and rendered into a single
typed error event via ``VoiceError.to_event_data()``.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from parley.core.logging import get_logger

logger = get_logger(__name__)


class VoiceErrorCategory(str, Enum):
    """Voice error categories for classification."""

    CONNECTION = "connection"  # WebSocket and protocol errors
    STT = "stt"  # Speech-to-text errors
    TTS = "tts"  # Text-to-speech errors
    LLM = "llm"  # Language model errors
    RETRIEVAL = "retrieval"  # Embedding / knowledge lookup errors
    TIMEOUT = "timeout"  # Subprocess and backend timeouts
    INTERNAL = "internal"  # Internal server errors


@dataclass
class VoiceErrorCode:
    """Voice error code with metadata."""

    code: str
    category: VoiceErrorCategory
    description: str
    recoverable: bool
    retry_after_seconds: Optional[int] = None


# ============================================================================
# Connection Errors
# ============================================================================

CONN_006 = VoiceErrorCode(
    code="CONN_006",
    category=VoiceErrorCategory.CONNECTION,
    description="Protocol error - invalid message format",
    recoverable=False,
)

# ============================================================================
# Speech-to-Text Errors
# ============================================================================

STT_001 = VoiceErrorCode(
    code="STT_001",
    category=VoiceErrorCategory.STT,
    description="Audio transcoding failed",
    recoverable=True,
)

STT_002 = VoiceErrorCode(
    code="STT_002",
    category=VoiceErrorCategory.STT,
    description="Transcription failed",
    recoverable=True,
    retry_after_seconds=1,
)

STT_003 = VoiceErrorCode(
    code="STT_003",
    category=VoiceErrorCategory.STT,
    description="Realtime transcription backend error",
    recoverable=True,
    retry_after_seconds=1,
)

STT_004 = VoiceErrorCode(
    code="STT_004",
    category=VoiceErrorCategory.STT,
    description="Realtime transcription unavailable",
    recoverable=False,
)

# ============================================================================
# Language Model Errors
# ============================================================================

LLM_001 = VoiceErrorCode(
    code="LLM_001",
    category=VoiceErrorCategory.LLM,
    description="Response generation failed",
    recoverable=True,
    retry_after_seconds=1,
)

LLM_002 = VoiceErrorCode(
    code="LLM_002",
    category=VoiceErrorCategory.LLM,
    description="Language model temporarily unavailable",
    recoverable=True,
    retry_after_seconds=30,
)

# ============================================================================
# Text-to-Speech Errors
# ============================================================================

TTS_001 = VoiceErrorCode(
    code="TTS_001",
    category=VoiceErrorCategory.TTS,
    description="Speech synthesis failed",
    recoverable=True,
)

TTS_002 = VoiceErrorCode(
    code="TTS_002",
    category=VoiceErrorCategory.TTS,
    description="Voice model not found",
    recoverable=False,
)

# ============================================================================
# Retrieval, Timeout and Internal Errors
# ============================================================================

RAG_001 = VoiceErrorCode(
    code="RAG_001",
    category=VoiceErrorCategory.RETRIEVAL,
    description="Knowledge retrieval failed",
    recoverable=True,
)

TIMEOUT_001 = VoiceErrorCode(
    code="TIMEOUT_001",
    category=VoiceErrorCategory.TIMEOUT,
    description="External process timed out",
    recoverable=True,
)

INT_001 = VoiceErrorCode(
    code="INT_001",
    category=VoiceErrorCategory.INTERNAL,
    description="Internal server error",
    recoverable=False,
)


ERROR_CODE_MAP = {
    error_code.code: error_code
    for error_code in (
        CONN_006,
        STT_001,
        STT_002,
        STT_003,
        STT_004,
        LLM_001,
        LLM_002,
        TTS_001,
        TTS_002,
        RAG_001,
        TIMEOUT_001,
        INT_001,
    )
}


def get_error_code(code: str) -> Optional[VoiceErrorCode]:
    """Get error code by string code."""
    return ERROR_CODE_MAP.get(code)


class VoiceError(Exception):
    """
    Voice-specific exception with structured error info.

    Usage:
        raise VoiceError(STT_001, provider="ffmpeg", session_id="abc123")
        raise VoiceError(TTS_001, original_error=e)
    """

    def __init__(
        self,
        error_code: VoiceErrorCode,
        message: Optional[str] = None,
        provider: Optional[str] = None,
        session_id: Optional[str] = None,
        original_error: Optional[Exception] = None,
        **extra,
    ):
        self.error_code = error_code
        self.provider = provider
        self.session_id = session_id
        self.original_error = original_error
        self.extra = extra

        self.message = message or error_code.description
        if original_error:
            self.message = f"{self.message}: {str(original_error)}"

        super().__init__(self.message)

        self._log_error()

    def _log_error(self):
        """Log error with structured fields."""
        log_data = {
            "error_code": self.error_code.code,
            "category": self.error_code.category.value,
            "recoverable": self.error_code.recoverable,
            "message": self.message,
        }
        if self.provider:
            log_data["provider"] = self.provider
        if self.session_id:
            log_data["session_id"] = self.session_id
        if self.extra:
            log_data.update(self.extra)

        if self.error_code.recoverable:
            logger.warning("voice_error", **log_data)
        else:
            logger.error("voice_error", **log_data)

    @property
    def code(self) -> str:
        return self.error_code.code

    @property
    def is_recoverable(self) -> bool:
        """Check if error can be recovered from."""
        return self.error_code.recoverable

    @property
    def retry_after(self) -> Optional[int]:
        """Get recommended retry delay in seconds."""
        return self.error_code.retry_after_seconds

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON response."""
        result = {
            "code": self.error_code.code,
            "category": self.error_code.category.value,
            "message": self.message,
            "recoverable": self.error_code.recoverable,
        }
        if self.error_code.retry_after_seconds:
            result["retry_after_seconds"] = self.error_code.retry_after_seconds
        if self.provider:
            result["provider"] = self.provider
        return result

    def to_event_data(self) -> dict:
        """Payload for a protocol error event (``error``, ``stt_error``, ``tts_error``)."""
        return {"code": self.error_code.code, "message": self.message}


def as_voice_error(
    exc: BaseException,
    fallback: VoiceErrorCode,
    provider: Optional[str] = None,
    session_id: Optional[str] = None,
) -> VoiceError:
    """Wrap an arbitrary backend exception, keeping existing VoiceErrors as-is."""
    if isinstance(exc, VoiceError):
        return exc
    return VoiceError(fallback, provider=provider, session_id=session_id, original_error=exc)


# ============================================================================
# Error Recording Functions (for metrics)
# ============================================================================


def record_voice_error(
    error_code: VoiceErrorCode,
    provider: Optional[str] = None,
) -> None:
    """
    Record a voice error for metrics.

    Imports metrics lazily to avoid circular imports.
    """
    from parley.core.metrics import voice_errors_total

    voice_errors_total.labels(
        category=error_code.category.value,
        code=error_code.code,
        provider=provider or "unknown",
        recoverable=str(error_code.recoverable).lower(),
    ).inc()
