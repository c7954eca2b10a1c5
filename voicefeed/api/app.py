"""
FastAPI application factory.

``create_app()`` assembles the application with CORS, error handlers,
routers, and the health endpoint. The backend is built once in the
lifespan and stored on ``app.state``. The module-level ``app`` instance
allows ``uvicorn voicefeed.api.app:app --reload``.
"""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from voicefeed import __version__
from voicefeed.api import websocket
from voicefeed.api.middleware.error_handler import register_error_handlers
from voicefeed.api.routes import auth, memos, profiles, storage
from voicefeed.core.config import Settings, get_settings
from voicefeed.core.models import HealthResponse
from voicefeed.services.backend import Backend, create_backend

logger = logging.getLogger(__name__)


def create_app(settings: Settings | None = None, backend: Backend | None = None) -> FastAPI:
    """Build and return a fully configured FastAPI application.

    Args:
        settings: Configuration (defaults to ``get_settings()``).
        backend: Pre-built backend. When given, the caller owns its
            lifetime; otherwise one is created from settings at startup and
            closed at shutdown.
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        owned = backend is None
        active = backend or create_backend(settings)
        await active.start()
        app.state.backend = active
        logger.info("Backend %r ready", active.name)
        try:
            yield
        finally:
            if owned:
                await active.close()

    app = FastAPI(
        title="VoiceFeed",
        description="Record, publish, and browse short voice memos.",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings

    # -- CORS --
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[
            "http://localhost:3000",  # Dev frontend
            settings.public_base_url,
        ],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # -- Error handlers --
    register_error_handlers(app)

    # -- Health check (root-level, not under /api/v1) --
    @app.get("/health", response_model=HealthResponse, tags=["system"])
    async def health(request: Request) -> HealthResponse:
        return HealthResponse(
            version=__version__,
            backend=request.app.state.backend.name,
            timestamp=datetime.now(UTC),
        )

    # -- REST routes --
    app.include_router(auth.router, prefix="/api/v1")
    app.include_router(profiles.router, prefix="/api/v1")
    app.include_router(memos.router, prefix="/api/v1")

    # -- Local object storage --
    app.include_router(storage.router)

    # -- WebSocket --
    app.include_router(websocket.router)

    return app


app = create_app()
