"""
Health check endpoints
"""

import time

from fastapi import APIRouter, Request
from pydantic import BaseModel

from parley.core.config import settings
from parley.core.logging import get_logger
from parley.services.chat_websocket_handler import chat_session_manager

router = APIRouter()
logger = get_logger(__name__)


class HealthResponse(BaseModel):
    """Health check response model"""

    status: str
    version: str
    timestamp: float
    knowledge_chunks: int
    active_sessions: int


@router.get("/health", response_model=HealthResponse)
async def health_check(request: Request):
    """
    Basic health check endpoint
    Returns 200 if the service is running
    """
    logger.debug("health_check_requested")
    services = getattr(request.app.state, "services", None)
    return HealthResponse(
        status="healthy",
        version=settings.APP_VERSION,
        timestamp=time.time(),
        knowledge_chunks=len(services.knowledge) if services is not None else 0,
        active_sessions=chat_session_manager.get_active_session_count(),
    )
