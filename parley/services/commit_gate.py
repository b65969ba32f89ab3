"""
Commit Gate for Realtime Transcription

Decides when buffered PCM is flushed ("committed") to the realtime
transcription backend.

A commit is sent only when:
- the backend session is ready
- no commit is in flight
- fresh audio arrived since the last commit
- at least ``min_commit_bytes`` of fresh audio accumulated

Sending marks the commit in flight; only the backend acknowledgment clears it
and resets the counters. A failed send clears in-flight so the next qualifying
check can retry. The audio-ingest path, the ack path and the safety-net tick
all go through one lock, so at most one commit is ever outstanding.
"""

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from parley.core.config import settings
from parley.core.logging import get_logger

logger = get_logger(__name__)

# 16 kHz mono 16-bit PCM
PCM_BYTES_PER_MS = 32


@dataclass
class CommitGateState:
    bytes_since_commit: int = 0
    fresh_audio: bool = False
    commit_in_flight: bool = False


class CommitGate:
    def __init__(
        self,
        min_commit_ms: Optional[int] = None,
        backend_min_commit_ms: Optional[int] = None,
        bytes_per_ms: int = PCM_BYTES_PER_MS,
    ):
        min_commit_ms = settings.STT_MIN_COMMIT_MS if min_commit_ms is None else min_commit_ms
        backend_min_commit_ms = (
            settings.STT_BACKEND_MIN_COMMIT_MS if backend_min_commit_ms is None else backend_min_commit_ms
        )
        self.min_commit_bytes = max(min_commit_ms, backend_min_commit_ms) * bytes_per_ms
        self.state = CommitGateState()
        self.ready = False
        self._lock = asyncio.Lock()
        self._idle = asyncio.Event()
        self._idle.set()

        self.commits_sent = 0
        self.acks_received = 0
        self.send_failures = 0

    @property
    def outstanding(self) -> int:
        return 1 if self.state.commit_in_flight else 0

    def set_ready(self, ready: bool = True) -> None:
        self.ready = ready

    async def on_audio(self, nbytes: int) -> None:
        """Account for ``nbytes`` of PCM appended to the backend buffer."""
        if nbytes <= 0:
            return
        async with self._lock:
            self.state.bytes_since_commit += nbytes
            self.state.fresh_audio = True

    def _can_commit(self) -> bool:
        return (
            self.ready
            and not self.state.commit_in_flight
            and self.state.fresh_audio
            and self.state.bytes_since_commit >= self.min_commit_bytes
        )

    async def try_commit(self, send_commit: Callable[[], Awaitable[None]]) -> bool:
        """
        Send a commit through ``send_commit`` if the gate allows it.

        Returns:
            True when a commit was sent and is now in flight
        """
        async with self._lock:
            if not self._can_commit():
                return False
            self.state.commit_in_flight = True
            self._idle.clear()
            try:
                await send_commit()
            except Exception as e:
                self.state.commit_in_flight = False
                self._idle.set()
                self.send_failures += 1
                logger.warning("stt_commit_send_failed", error=str(e), bytes=self.state.bytes_since_commit)
                return False
            self.commits_sent += 1
            logger.debug("stt_commit_sent", bytes=self.state.bytes_since_commit)
            return True

    async def on_ack(self) -> None:
        """Backend finished transcribing the last commit."""
        async with self._lock:
            self.acks_received += 1
            self.state = CommitGateState()
            self._idle.set()

    async def on_transport_error(self) -> None:
        """Backend reported an error; allow a retry on the next qualifying check."""
        async with self._lock:
            self.state.commit_in_flight = False
            self._idle.set()

    async def wait_idle(self, timeout: float) -> bool:
        """Wait until no commit is in flight. Returns False on timeout."""
        try:
            await asyncio.wait_for(self._idle.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True

    def get_stats(self) -> dict:
        return {
            "min_commit_bytes": self.min_commit_bytes,
            "bytes_since_commit": self.state.bytes_since_commit,
            "commit_in_flight": self.state.commit_in_flight,
            "commits_sent": self.commits_sent,
            "acks_received": self.acks_received,
            "send_failures": self.send_failures,
        }
