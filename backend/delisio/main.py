"""FastAPI application entry point and lifespan management.

Configures CORS, error handling and rate limiting, registers the API
routers, and owns the process-wide services: the service container is
built on startup (or injected by tests), the cancellation sweep runs as a
background task, and shared HTTP clients are closed on shutdown.
"""
from __future__ import annotations

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from delisio.api.v1.router import router as v1_router
from delisio.config import get_settings
from delisio.errors import register_exception_handlers
from delisio.schemas.common import HealthResponse
from delisio.services.cancellation_registry import run_periodic_sweep
from delisio.services.context import ServiceContext, build_context
from delisio.services.http_client_manager import close_all_clients
from delisio.services.rate_limiter import install_rate_limiter
from delisio.utils.startup import recover_stale_jobs, setup_logging

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup: tables, services, stale-job recovery, cancellation sweep."""
    settings = get_settings()
    setup_logging(settings.LOG_LEVEL)

    services: ServiceContext | None = getattr(app.state, "services", None)
    if services is None:
        from delisio.database import create_tables
        create_tables()
        logger.info("Database tables ready")
        services = build_context(settings)
        app.state.services = services

    recover_stale_jobs(services.session_factory, services.settings.STALE_JOB_SECONDS)

    sweeper = asyncio.create_task(
        run_periodic_sweep(services.registry, services.settings.CANCELLATION_SWEEP_INTERVAL_SECONDS)
    )

    yield  # Application runs here

    sweeper.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await sweeper
    await close_all_clients()
    logger.info("Shutting down")


def create_app(services: ServiceContext | None = None) -> FastAPI:
    settings = services.settings if services else get_settings()

    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    if services is not None:
        app.state.services = services

    # Rate limiting runs inside CORS so rejected requests still carry CORS headers
    install_rate_limiter(app)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_exception_handlers(app)

    @app.get("/health", tags=["Health"], response_model=HealthResponse)
    async def health():
        return HealthResponse(
            status="healthy",
            version=settings.APP_VERSION,
            timestamp=datetime.now(timezone.utc),
        )

    app.include_router(v1_router)

    return app


app = create_app()
