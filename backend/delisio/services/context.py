"""Service container shared by the API process and the Celery workers.

Built once per process (FastAPI lifespan, Celery worker) and handed to
route handlers through ``app.state.services`` and to the job runner
directly. Tests build their own with in-memory stores and fakes.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy.orm import sessionmaker

from delisio.config import Settings
from delisio.services.cancellation_registry import CancellationRegistry, build_registry
from delisio.services.image_service import ImageService
from delisio.services.job_queue import CeleryDispatcher, Dispatcher, JobQueue
from delisio.services.llm_client import LLMClient
from delisio.services.partial_recipe_cache import PartialRecipeCache
from delisio.services.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)


@dataclass
class ServiceContext:
    settings: Settings
    session_factory: sessionmaker
    registry: CancellationRegistry
    queue: JobQueue
    partial_cache: PartialRecipeCache
    llm: LLMClient
    images: ImageService
    rate_limiter: RateLimiter | None = None
    progress_redis_url: str | None = None


def build_context(
    settings: Settings,
    session_factory: sessionmaker | None = None,
    dispatcher: Dispatcher | None = None,
    with_rate_limiter: bool = True,
) -> ServiceContext:
    """Wire the production services from *settings*."""
    if session_factory is None:
        from delisio.database import SessionLocal
        session_factory = SessionLocal

    registry = build_registry(settings)
    queue = JobQueue(session_factory, registry, dispatcher or CeleryDispatcher())
    limiter = None
    if with_rate_limiter and settings.RATE_LIMIT_ENABLED:
        limiter = RateLimiter.from_settings(settings)

    logger.info("Services ready (cancellation backend: %s)", settings.CANCELLATION_BACKEND)
    return ServiceContext(
        settings=settings,
        session_factory=session_factory,
        registry=registry,
        queue=queue,
        partial_cache=PartialRecipeCache.from_url(settings.REDIS_URL, settings.PARTIAL_RECIPE_TTL_SECONDS),
        llm=LLMClient.from_settings(settings),
        images=ImageService.from_settings(settings),
        rate_limiter=limiter,
        progress_redis_url=settings.REDIS_URL,
    )
