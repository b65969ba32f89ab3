"""
Chat WebSocket Handler

Owns one client connection:
- a receive task that reads frames and enqueues parsed envelopes
- a worker task that feeds them, one at a time, to the SessionOrchestrator
- a send lock so events from the chat path, synthesis jobs and the realtime
  STT tasks never interleave on the socket

Malformed frames are logged and dropped; the connection stays open.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

from starlette.websockets import WebSocket, WebSocketDisconnect, WebSocketState

from parley.core.envelope import InboundEnvelope, parse_envelope
from parley.core.logging import get_logger, get_voice_logger
from parley.core.metrics import voice_active_sessions
from parley.core.voice_errors import INT_001, VoiceError, as_voice_error, record_voice_error
from parley.services.session_orchestrator import SessionOrchestrator, SessionServices, SessionState

logger = get_logger(__name__)
voice_log = get_voice_logger(__name__)

# Sentinel telling the worker the receive side is finished
_END_OF_STREAM = None


@dataclass
class ConnectionMetrics:
    messages_received: int = 0
    messages_sent: int = 0
    messages_dropped: int = 0
    error_count: int = 0


class ChatWebSocketHandler:
    def __init__(self, websocket: WebSocket, services: SessionServices, state: Optional[SessionState] = None):
        self.websocket = websocket
        self.orchestrator = SessionOrchestrator(services, self._send_message, state=state)
        self.metrics = ConnectionMetrics()

        self._queue: "asyncio.Queue[Optional[InboundEnvelope]]" = asyncio.Queue()
        self._send_lock = asyncio.Lock()
        self._receive_task: Optional[asyncio.Task] = None
        self._worker_task: Optional[asyncio.Task] = None
        self._running = False
        self._started_at = time.monotonic()

    @property
    def session_id(self) -> str:
        return self.orchestrator.session_id

    async def start(self) -> None:
        self._running = True
        self._receive_task = asyncio.create_task(self._receive_loop())
        self._worker_task = asyncio.create_task(self._worker_loop())
        voice_active_sessions.inc()
        voice_log.session_start(self.session_id)

    async def run(self) -> None:
        """Serve the connection until the client goes away, then tear down its turns."""
        await self.start()
        try:
            await self._receive_task
        except asyncio.CancelledError:
            pass
        finally:
            await self.stop()

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False

        for task in (self._receive_task, self._worker_task):
            if task and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

        await self.orchestrator.close()
        voice_active_sessions.dec()

        if self.websocket.client_state == WebSocketState.CONNECTED:
            try:
                await self.websocket.close()
            except RuntimeError:
                pass

        logger.info(
            "chat_connection_closed",
            session_id=self.session_id,
            duration_ms=round((time.monotonic() - self._started_at) * 1000, 2),
            **self.get_metrics(),
        )

    async def _receive_loop(self) -> None:
        try:
            while self._running:
                try:
                    raw = await self.websocket.receive_text()
                except WebSocketDisconnect:
                    logger.info("WebSocket disconnected: %s", self.session_id)
                    break
                except KeyError:
                    # Binary frames carry no text payload
                    self.metrics.messages_dropped += 1
                    logger.warning("binary_frame_dropped", session_id=self.session_id)
                    continue

                self.metrics.messages_received += 1
                try:
                    envelope = parse_envelope(raw)
                except VoiceError:
                    self.metrics.messages_dropped += 1
                    continue
                await self._queue.put(envelope)
        except RuntimeError as e:
            logger.info("WebSocket receive ended: %s", e)
        finally:
            await self._queue.put(_END_OF_STREAM)

    async def _worker_loop(self) -> None:
        while True:
            envelope = await self._queue.get()
            if envelope is _END_OF_STREAM:
                break
            try:
                await self.orchestrator.handle_envelope(envelope)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                # A handler bug must not take the connection down
                self.metrics.error_count += 1
                logger.error("message_handling_failed", type=envelope.type, error=str(e), exc_info=True)
                error = as_voice_error(e, INT_001, session_id=self.session_id)
                record_voice_error(error.error_code)
                await self.orchestrator.report_error(error)

    async def _send_message(self, message: Dict[str, Any]) -> None:
        """Serialized send; a vanished client is logged, never raised."""
        async with self._send_lock:
            if self.websocket.client_state != WebSocketState.CONNECTED:
                self.metrics.messages_dropped += 1
                return
            try:
                await self.websocket.send_json(message)
                self.metrics.messages_sent += 1
            except (WebSocketDisconnect, RuntimeError, OSError) as e:
                self.metrics.error_count += 1
                logger.warning("send_failed", type=message.get("type"), error=str(e), session_id=self.session_id)

    def get_metrics(self) -> Dict[str, int]:
        return {
            "messages_received": self.metrics.messages_received,
            "messages_sent": self.metrics.messages_sent,
            "messages_dropped": self.metrics.messages_dropped,
            "error_count": self.metrics.error_count,
        }


# ==============================================================================
# Session Manager
# ==============================================================================


class ChatSessionManager:
    """Tracks live connections for health reporting and shutdown."""

    def __init__(self, max_sessions: int = 100):
        self.max_sessions = max_sessions
        self._sessions: Dict[str, ChatWebSocketHandler] = {}
        self._lock = asyncio.Lock()

    async def create_session(self, websocket: WebSocket, services: SessionServices) -> ChatWebSocketHandler:
        """
        Raises:
            ValueError: If max sessions reached
        """
        async with self._lock:
            if len(self._sessions) >= self.max_sessions:
                raise ValueError("Maximum concurrent sessions reached")
            handler = ChatWebSocketHandler(websocket, services)
            self._sessions[handler.session_id] = handler
            return handler

    async def remove_session(self, session_id: str) -> None:
        async with self._lock:
            handler = self._sessions.pop(session_id, None)
        if handler is not None:
            await handler.stop()

    async def close_all(self) -> None:
        for session_id in list(self._sessions):
            await self.remove_session(session_id)

    def get_active_session_count(self) -> int:
        return len(self._sessions)


# Global session manager
chat_session_manager = ChatSessionManager()
