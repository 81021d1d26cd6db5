"""
Threadline - Main FastAPI Application
Streaming chat backend: resumable generations, durable transcripts, quotas.
"""

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
from typing import Optional
import logging

from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker

from .config import settings
from .database import AsyncSessionLocal, engine, init_db, close_db
from .errors import ChatError
from .routers import chat_router, conversations_router
from .services import (
    FETCH_PAGE_TOOL,
    ChatController,
    LLMService,
    PersistenceBridge,
    QuotaGate,
    SessionManager,
    SqlQuotaStore,
)
from .services.stream_session import ModelProvider


logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def create_app(
    provider: Optional[ModelProvider] = None,
    session_factory: Optional[async_sessionmaker] = None,
    bind: Optional[AsyncEngine] = None,
) -> FastAPI:
    """Build the application.

    ``provider``, ``session_factory`` and ``bind`` default to the configured
    LLM endpoint and database; tests pass their own.
    """
    session_factory = session_factory or AsyncSessionLocal

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan events."""
        # Startup
        await init_db(bind)

        llm = LLMService(tools=[FETCH_PAGE_TOOL])
        persistence = PersistenceBridge(session_factory)
        sessions = SessionManager(provider or llm, persistence, thinking_models=settings.THINKING_MODELS)
        app.state.llm = llm
        app.state.persistence = persistence
        app.state.sessions = sessions
        app.state.controller = ChatController(
            persistence,
            QuotaGate(SqlQuotaStore(session_factory)),
            sessions,
        )
        logger.info("%s %s started", settings.APP_NAME, settings.APP_VERSION)

        yield

        # Shutdown
        await sessions.shutdown()
        if bind is None:
            await close_db()

    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="Streaming chat backend with resumable generations and per-identity quotas",
        lifespan=lifespan
    )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # In production, specify exact origins
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ChatError)
    async def chat_error_handler(request: Request, exc: ChatError) -> JSONResponse:
        log = logger.error if exc.status_code >= 500 else logger.info
        log("%s on %s: %s", exc.code, request.url.path, exc.detail or exc.user_message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    # Include routers
    app.include_router(chat_router)
    app.include_router(conversations_router)

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        return {
            "status": "healthy",
            "app": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "database": engine.url.get_backend_name() if bind is None else bind.url.get_backend_name(),
        }

    return app


app = create_app()
