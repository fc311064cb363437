"""
AIR Discovery Chat Service - FastAPI Application
LLM Provider:
- If OPENAI_API_KEY is set: use OpenAI
- If no OPENAI_API_KEY: use Ollama (llama3.2)
- LLM_PROVIDER=rule_based: offline interviewer, no model needed
"""

import asyncio
import sys
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger

from . import __version__
from .agents.chat_controller import ChatSessionController
from .api.auth import TokenVerifier
from .api.sessions import router as sessions_router
from .api.websocket import ConnectionGateway, router as websocket_router
from .config import settings
from .interfaces.session_store import SessionStore, build_session_store, purge_expired_periodically
from .llm.completion_source import CompletionSource, build_completion_source
from .utils.chat_helpers import utcnow


def configure_logging() -> None:
    """Single stderr sink at LOG_LEVEL; JSON lines when LOG_JSON is set"""
    logger.remove()
    if settings.LOG_JSON:
        logger.add(sys.stderr, level=settings.LOG_LEVEL, serialize=True)
    else:
        logger.add(
            sys.stderr,
            level=settings.LOG_LEVEL,
            format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
                   "<cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>",
        )


# ============================================
# Application Lifespan
# ============================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler"""
    store: SessionStore = app.state.session_store
    source: CompletionSource = app.state.completion_source
    gateway: ConnectionGateway = app.state.gateway

    logger.info("=" * 50)
    logger.info("Starting AIR Discovery Chat Service")
    logger.info("=" * 50)
    logger.info(f"Environment: {settings.API_ENV}")
    logger.info(f"LLM Provider: {source.name}")
    logger.info(f"Session store: {store.__class__.__name__} (ttl={store.ttl_seconds}s)")

    if await store.ping():
        logger.info("  ✓ session store reachable")
    else:
        logger.warning("  ✗ session store not reachable; chats will fail until it recovers")

    purge_task = asyncio.create_task(
        purge_expired_periodically(store, settings.SESSION_PURGE_INTERVAL_SECONDS)
    )

    yield

    purge_task.cancel()
    try:
        await purge_task
    except asyncio.CancelledError:
        pass
    await gateway.shutdown(settings.SHUTDOWN_GRACE_SECONDS)
    await source.close()
    await store.close()
    logger.info("Chat service shutdown complete")


# ============================================
# FastAPI Application
# ============================================

def create_app(
    store: Optional[SessionStore] = None,
    completion_source: Optional[CompletionSource] = None,
    token_verifier: Optional[TokenVerifier] = None,
    controller: Optional[ChatSessionController] = None,
) -> FastAPI:
    """
    Build the application

    Collaborators default to the configured production ones; tests pass
    in-memory or scripted replacements.
    """
    store = store if store is not None else build_session_store()
    completion_source = completion_source if completion_source is not None else build_completion_source()
    token_verifier = token_verifier or TokenVerifier.from_settings()
    controller = controller or ChatSessionController(
        store,
        completion_source,
        history_window=settings.LLM_HISTORY_WINDOW,
        max_questions=settings.INTERVIEW_MAX_QUESTIONS,
        message_max_length=settings.MESSAGE_MAX_LENGTH,
        delete_on_end=settings.SESSION_DELETE_ON_END,
    )
    gateway = ConnectionGateway(
        controller,
        token_verifier,
        auth_timeout=settings.WS_AUTH_TIMEOUT_SECONDS,
        dedup_window_seconds=settings.DEDUP_WINDOW_SECONDS,
        dedup_window_size=settings.DEDUP_WINDOW_SIZE,
    )

    app = FastAPI(
        title="AIR Discovery Chat Service",
        description="Conversational travel interview over WebSocket with streamed LLM replies. Supports OpenAI and Ollama.",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )
    app.state.session_store = store
    app.state.completion_source = completion_source
    app.state.token_verifier = token_verifier
    app.state.controller = controller
    app.state.gateway = gateway

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(websocket_router)
    app.include_router(sessions_router)

    # ============================================
    # REST Endpoints
    # ============================================

    @app.get("/")
    async def root(request: Request):
        """Root endpoint"""
        return {
            "service": "AIR Discovery Chat Service",
            "version": __version__,
            "status": "running",
            "llm_provider": request.app.state.completion_source.name,
            "docs": "/docs",
            "endpoints": [
                "/api/ai/health",
                "/api/ai/chat/ws",
                "/api/ai/chat/ws/status",
                "/api/ai/sessions/user/{user_id}",
                "/api/ai/sessions/{session_id}",
            ],
        }

    @app.get("/api/ai/health")
    async def health_check(request: Request):
        """Detailed health check"""
        state = request.app.state
        store_ok = await state.session_store.ping()
        return {
            "status": "healthy" if store_ok else "degraded",
            "timestamp": utcnow().isoformat(),
            "components": {
                "session_store": "connected" if store_ok else "unavailable",
                "llm": state.completion_source.name,
            },
            "websocket_connections": state.gateway.get_connection_count(),
        }

    return app


configure_logging()
app = create_app()


if __name__ == "__main__":
    uvicorn.run(
        "discovery_ai.main:app",
        host=settings.API_HOST,
        port=settings.API_PORT,
        reload=settings.API_ENV == "development",
    )
