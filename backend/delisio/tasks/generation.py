"""Celery tasks for recipe, chat and image generation.

Each task runs one attempt of a job through ``JobRunner``. The pipelines
are async, so every task drives its coroutine on a fresh event loop.
Retries use Celery's own mechanism with exponential backoff; the retry
limit per kind comes from settings.
"""
from __future__ import annotations

import asyncio
import logging

from delisio.celery_app import celery_app
from delisio.config import get_settings
from delisio.services.context import ServiceContext, build_context
from delisio.services.http_client_manager import close_all_clients
from delisio.services.job_runner import JobRunner, RunOutcome

logger = logging.getLogger(__name__)

settings = get_settings()

_context: ServiceContext | None = None


def get_worker_context() -> ServiceContext:
    """Services for this worker process, built on first use."""
    global _context
    if _context is None:
        _context = build_context(settings, with_rate_limiter=False)
    return _context


def _run_attempt(request_id: str, attempt: int, max_retries: int) -> RunOutcome:
    runner = JobRunner(get_worker_context())

    async def _go() -> RunOutcome:
        try:
            return await runner.run(request_id, attempt=attempt, max_retries=max_retries)
        finally:
            await close_all_clients()

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(_go())
    finally:
        loop.close()


def _execute(task, request_id: str, max_retries: int, backoff_seconds: float) -> dict:
    attempt = task.request.retries
    outcome = _run_attempt(request_id, attempt, max_retries)
    if outcome.status == "retry":
        countdown = backoff_seconds * (2 ** attempt)
        logger.info("Retrying job %s in %.1fs", request_id[:8], countdown)
        raise task.retry(countdown=countdown, max_retries=max_retries)
    return outcome.as_dict()


@celery_app.task(bind=True, name="generation.recipe", max_retries=settings.RECIPE_MAX_RETRIES)
def process_recipe(self, request_id: str):
    return _execute(self, request_id, settings.RECIPE_MAX_RETRIES, 0.0)


@celery_app.task(bind=True, name="generation.chat", max_retries=settings.CHAT_MAX_RETRIES)
def process_chat(self, request_id: str):
    return _execute(self, request_id, settings.CHAT_MAX_RETRIES, settings.CHAT_RETRY_BACKOFF_SECONDS)


@celery_app.task(bind=True, name="generation.image", max_retries=settings.IMAGE_MAX_RETRIES)
def process_image(self, request_id: str):
    return _execute(self, request_id, settings.IMAGE_MAX_RETRIES, settings.IMAGE_RETRY_BACKOFF_SECONDS)
