"""
Chat WebSocket endpoint

One connection per client. Frames are protocol envelopes
``{version, turnId, replyTo, timestamp, type, messageId, data}``; see
``parley.core.envelope`` for the message types.
"""

from fastapi import APIRouter, WebSocket

from parley.core.logging import get_logger
from parley.services.chat_websocket_handler import chat_session_manager

router = APIRouter(prefix="/api/chat", tags=["chat"])
logger = get_logger(__name__)


@router.websocket("/ws")
async def chat_websocket(websocket: WebSocket):
    """
    Conversational session: text chat with streamed tokens, sentence-level
    TTS and batch or realtime speech-to-text.
    """
    await websocket.accept()

    services = getattr(websocket.app.state, "services", None)
    if services is None:
        logger.error("chat_services_not_initialized")
        await websocket.close(code=1011)
        return

    try:
        handler = await chat_session_manager.create_session(websocket, services)
    except ValueError as e:
        logger.warning("chat_session_rejected", reason=str(e))
        await websocket.close(code=1013)
        return

    try:
        await handler.run()
    finally:
        await chat_session_manager.remove_session(handler.session_id)
