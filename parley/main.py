"""
Parley Voice Gateway - Main Application
"""

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from parley.api import chat, health, metrics
from parley.core.config import settings
from parley.core.logging import configure_logging, get_logger
from parley.services.audio_transcoder import AudioTranscoder
from parley.services.chat_websocket_handler import chat_session_manager
from parley.services.knowledge_service import KnowledgeIndex, load_knowledge
from parley.services.llm_client import LLMClient
from parley.services.prompt_composer import Persona
from parley.services.realtime_stt_service import OpenAIRealtimeBackend
from parley.services.session_orchestrator import SessionServices
from parley.services.stt_service import HttpTranscriber
from parley.services.tts_service import create_synthesizer

# Configure logging
configure_logging()
logger = get_logger(__name__)


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    debug=settings.DEBUG,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET"],
    allow_headers=["*"],
)

app.include_router(health.router, prefix="/api", tags=["health"])
app.include_router(metrics.router)
app.include_router(chat.router)


def build_services() -> SessionServices:
    """Backends shared by every connection."""
    llm = LLMClient()
    return SessionServices(
        llm=llm,
        embedder=llm if llm.enabled else None,
        synthesizer=create_synthesizer(),
        transcoder=AudioTranscoder(),
        transcriber=HttpTranscriber(),
        persona=Persona.from_settings(),
        realtime_backend_factory=OpenAIRealtimeBackend if settings.OPENAI_API_KEY else None,
    )


@app.on_event("startup")
async def startup_event():
    """Application startup tasks"""
    logger.info(
        "application_startup",
        app_name=settings.APP_NAME,
        version=settings.APP_VERSION,
        environment=settings.ENVIRONMENT,
        debug=settings.DEBUG,
    )

    services = build_services()
    if services.embedder is not None:
        services.knowledge = await load_knowledge(settings.KNOWLEDGE_DIR, services.embedder)
    else:
        services.knowledge = KnowledgeIndex()
        logger.info("knowledge_disabled", reason="no embedding backend")
    app.state.services = services

    logger.info(
        "session_services_initialized",
        tts_provider=getattr(services.synthesizer, "provider", "unknown"),
        knowledge_chunks=len(services.knowledge),
        realtime_stt=services.realtime_backend_factory is not None,
    )


@app.on_event("shutdown")
async def shutdown_event():
    """Application shutdown tasks"""
    logger.info(
        "application_shutdown",
        app_name=settings.APP_NAME,
        version=settings.APP_VERSION,
    )

    await chat_session_manager.close_all()

    services = getattr(app.state, "services", None)
    if services is None:
        return
    for backend in (services.synthesizer, services.transcriber):
        close = getattr(backend, "close", None)
        if close is not None:
            await close()


if __name__ == "__main__":
    uvicorn.run(
        "parley.main:app",
        host="0.0.0.0",  # nosec B104 - intentional for Docker container
        port=8000,
        reload=settings.DEBUG,
    )
