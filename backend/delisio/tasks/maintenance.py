"""Celery beat tasks: catalogue upkeep and job housekeeping."""
from __future__ import annotations

import logging

from delisio.celery_app import celery_app
from delisio.config import get_settings
from delisio.database import SessionLocal
from delisio.services.recipe_maintenance import purge_old_jobs, run_recipe_maintenance
from delisio.utils.startup import recover_stale_jobs

logger = logging.getLogger(__name__)


@celery_app.task(name="maintenance.recipe_maintenance")
def recipe_maintenance():
    settings = get_settings()
    return run_recipe_maintenance(SessionLocal, settings.QUALITY_PASS_THRESHOLD).as_dict()


@celery_app.task(name="maintenance.recover_stale_jobs")
def recover_stale_jobs_task():
    return {"recovered": recover_stale_jobs(SessionLocal)}


@celery_app.task(name="maintenance.purge_old_jobs")
def purge_old_jobs_task():
    return {"purged": purge_old_jobs(SessionLocal, get_settings().JOB_RETENTION_DAYS)}


@celery_app.task(name="maintenance.sweep_cancellations")
def sweep_cancellations():
    from delisio.tasks.generation import get_worker_context
    return {"swept": get_worker_context().registry.sweep()}
