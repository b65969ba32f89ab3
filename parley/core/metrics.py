"""Prometheus metrics for the voice gateway.

Metric constructors tolerate duplicate registration (module reloads in tests)
by falling back to a no-op metric.
"""

from prometheus_client import Counter, Gauge, Histogram

from parley.core.logging import get_logger

logger = get_logger(__name__)


class _NoopMetric:
    def labels(self, *args, **kwargs):
        return self

    def inc(self, *args, **kwargs):
        pass

    def dec(self, *args, **kwargs):
        pass

    def set(self, *args, **kwargs):
        pass

    def observe(self, *args, **kwargs):
        pass


def _safe_metric(metric_class, *args, **kwargs):
    try:
        return metric_class(*args, **kwargs)
    except ValueError:
        logger.debug("metric_already_registered", name=args[0] if args else None)
        return _NoopMetric()


# ============================================================================
# Errors
# ============================================================================

voice_errors_total = _safe_metric(
    Counter,
    "parley_voice_errors_total",
    "Total voice errors by category and code",
    ["category", "code", "provider", "recoverable"],
)

# ============================================================================
# Turns
# ============================================================================

chat_turns_total = _safe_metric(
    Counter,
    "parley_chat_turns_total",
    "Completed chat turns by outcome",
    ["outcome"],  # done, error
)

stt_turns_total = _safe_metric(
    Counter,
    "parley_stt_turns_total",
    "Completed STT turns by mode and outcome",
    ["mode", "outcome"],  # mode: batch, realtime; outcome: result, error
)

stt_commits_total = _safe_metric(
    Counter,
    "parley_stt_commits_total",
    "Audio commits sent to the realtime transcription backend",
)

# ============================================================================
# Latency
# ============================================================================

llm_first_token_seconds = _safe_metric(
    Histogram,
    "parley_llm_first_token_seconds",
    "Time from user_text to first generated token",
    buckets=[0.1, 0.2, 0.3, 0.5, 0.75, 1.0, 1.5, 2.0, 3.0, 5.0],
)

tts_synthesis_seconds = _safe_metric(
    Histogram,
    "parley_tts_synthesis_seconds",
    "Per-sentence speech synthesis latency",
    ["provider"],
    buckets=[0.05, 0.1, 0.2, 0.3, 0.5, 0.75, 1.0, 2.0, 5.0, 10.0],
)

stt_transcription_seconds = _safe_metric(
    Histogram,
    "parley_stt_transcription_seconds",
    "Batch transcode + transcription latency",
    buckets=[0.1, 0.25, 0.5, 1.0, 2.0, 4.0, 8.0, 15.0],
)

# ============================================================================
# Sessions
# ============================================================================

voice_active_sessions = _safe_metric(
    Gauge,
    "parley_active_sessions",
    "Current number of connected chat sessions",
)
