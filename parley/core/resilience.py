"""
Resilience patterns: Circuit Breaker and Retry Logic

Provides resilience utilities for backend calls made during a turn:
- Circuit breakers: fail fast when the LLM, TTS or STT backend is down
- Retry decorators: automatic retry with exponential backoff for transient failures

Usage:
    @retry_openai_operation()
    async def embed(...):
        ...

Circuit Breaker States:
- CLOSED: Normal operation, requests pass through
- OPEN: Service is failing, requests fail immediately
- HALF-OPEN: Testing if service recovered
"""

import logging
from contextlib import asynccontextmanager

import httpx
import structlog
from openai import APIConnectionError, APITimeoutError, RateLimitError
from pybreaker import STATE_CLOSED, CircuitBreaker, CircuitBreakerError
from tenacity import after_log, before_sleep_log, retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from parley.core.voice_errors import VoiceError, VoiceErrorCode

logger = structlog.get_logger(__name__)


# =============================================================================
# Circuit Breakers for External Dependencies
# =============================================================================

# OpenAI API Circuit Breaker (chat, embeddings, realtime transcription)
openai_breaker = CircuitBreaker(
    fail_max=10,  # More tolerant - transient failures common
    reset_timeout=120,
    name="openai_circuit_breaker",
)

# Speech synthesis backend (piper subprocess or fish-speech HTTP)
tts_breaker = CircuitBreaker(
    fail_max=5,
    reset_timeout=90,
    name="tts_circuit_breaker",
)

# HTTP transcription microservice
stt_breaker = CircuitBreaker(
    fail_max=5,
    reset_timeout=60,
    name="stt_circuit_breaker",
)


def ensure_breaker_closed(breaker: CircuitBreaker, error_code: VoiceErrorCode, provider: str) -> None:
    """Fail fast with a VoiceError when ``breaker`` is open."""
    if breaker.current_state == STATE_CLOSED:
        # A closed breaker is left alone so the failure count survives the check
        return
    try:
        # Once reset_timeout has elapsed this lets the next real call through
        breaker.call(lambda: None)
    except CircuitBreakerError as e:
        logger.error("%s circuit breaker is OPEN - failing fast", provider)
        raise VoiceError(error_code, message=f"{provider} is temporarily unavailable", provider=provider) from e


def record_backend_failure(breaker: CircuitBreaker, error: Exception) -> None:
    """Count one failed backend call; ``breaker`` opens after ``fail_max`` in a row."""

    def _fail():
        raise error

    try:
        breaker.call(_fail)
    except CircuitBreakerError:
        logger.error("%s opened after repeated backend failures", breaker.name)
    except Exception as e:
        if e is not error:
            raise


def record_backend_success(breaker: CircuitBreaker) -> None:
    """Reset the consecutive-failure count of a closed ``breaker``."""
    if breaker.current_state == STATE_CLOSED:
        breaker.call(lambda: None)


@asynccontextmanager
async def breaker_tracking(breaker: CircuitBreaker):
    """
    Record the outcome of the backend call made inside the block.

    Usage:
        async with breaker_tracking(tts_breaker):
            audio = await run_process(...)
    """
    try:
        yield
    except Exception as e:
        record_backend_failure(breaker, e)
        raise
    else:
        record_backend_success(breaker)


# =============================================================================
# Retry Decorators
# =============================================================================


def retry_openai_operation(max_attempts: int = 3):
    """
    Retry decorator for OpenAI API operations.

    Handles transient errors and rate limits with exponential backoff.
    Does NOT retry on authentication errors or invalid requests.

    Args:
        max_attempts: Maximum number of retry attempts (default: 3)
    """
    return retry(
        retry=retry_if_exception_type(
            (
                APIConnectionError,
                APITimeoutError,
                RateLimitError,
                httpx.ConnectError,
                httpx.ConnectTimeout,
                httpx.ReadTimeout,
            )
        ),
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=2, min=1, max=30),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        after=after_log(logger, logging.DEBUG),
        reraise=True,
    )


def retry_http_operation(max_attempts: int = 2):
    """
    Retry decorator for local HTTP backends (transcription, fish-speech).

    Only connection-level failures are retried; a backend that answered with
    an error status is not asked again within the same turn.

    Args:
        max_attempts: Maximum number of retry attempts (default: 2)
    """
    return retry(
        retry=retry_if_exception_type(
            (
                httpx.ConnectError,
                httpx.ConnectTimeout,
            )
        ),
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=1, min=0.5, max=5),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        after=after_log(logger, logging.DEBUG),
        reraise=True,
    )
