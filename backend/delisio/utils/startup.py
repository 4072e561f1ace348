"""Startup helpers shared between the FastAPI lifespan and Celery worker_init.

``setup_logging()`` gives both processes the same log format.
``recover_stale_jobs()`` fails jobs a dead worker left behind, so clients
polling them receive a final status instead of waiting forever.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import or_, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

logger = logging.getLogger(__name__)

STALE_JOB_MESSAGE = "Job was interrupted by a server restart. Please try again."


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    # Suppress noisy third-party HTTP loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


def recover_stale_jobs(
    session_factory: sessionmaker | None = None,
    stale_after_seconds: int | None = None,
    now: datetime | None = None,
) -> int:
    """Mark jobs stuck in ``active`` (or ``queued``) past the cutoff as failed.

    Returns the number of jobs recovered.
    """
    from delisio.config import get_settings
    from delisio.models import GenerationJob

    if session_factory is None:
        from delisio.database import SessionLocal
        session_factory = SessionLocal
    if stale_after_seconds is None:
        stale_after_seconds = get_settings().STALE_JOB_SECONDS
    now = now or datetime.now(timezone.utc)
    cutoff = now - timedelta(seconds=stale_after_seconds)

    db = session_factory()
    try:
        res = db.execute(
            update(GenerationJob)
            .where(or_(
                (GenerationJob.status == "active") & (GenerationJob.started_at < cutoff),
                (GenerationJob.status == "queued") & (GenerationJob.created_at < cutoff),
            ))
            .values(status="failed", error_message=STALE_JOB_MESSAGE, completed_at=now)
            .execution_options(synchronize_session=False)
        )
        db.commit()
        count = res.rowcount or 0
        if count:
            logger.warning("Recovered %d stale job(s)", count)
        return count
    except SQLAlchemyError as exc:
        db.rollback()
        logger.warning("Could not recover stale jobs: %s", exc)
        return 0
    finally:
        db.close()
