"""Celery application and worker configuration.

Defines the shared Celery instance used by the generation workers, with
one queue per job kind (``recipe``, ``chat``, ``image``), the beat
schedule for maintenance, and a ``worker_init`` hook that configures
logging and recovers jobs stranded by a previous unclean shutdown.
"""
import logging
from celery import Celery
from celery.schedules import crontab
from celery.signals import worker_init
from delisio.config import get_settings

settings = get_settings()

celery_app = Celery(
    "delisio_worker",
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL,
    include=["delisio.tasks.generation", "delisio.tasks.maintenance"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_acks_late=False,           # ACK on receipt; redelivery is handled by stale-job recovery
    worker_prefetch_multiplier=1,
    worker_concurrency=settings.CELERY_CONCURRENCY,
    result_expires=86400,  # 24 hours
    broker_connection_retry_on_startup=True,
    task_routes={
        "generation.recipe": {"queue": "recipe"},
        "generation.chat": {"queue": "chat"},
        "generation.image": {"queue": "image"},
        "maintenance.*": {"queue": "maintenance"},
    },
    beat_schedule={
        "recipe-maintenance-nightly": {
            "task": "maintenance.recipe_maintenance",
            "schedule": crontab(hour=3, minute=0),
        },
        "recover-stale-jobs": {
            "task": "maintenance.recover_stale_jobs",
            "schedule": 900.0,
        },
        "sweep-cancellation-records": {
            "task": "maintenance.sweep_cancellations",
            "schedule": float(settings.CANCELLATION_SWEEP_INTERVAL_SECONDS),
        },
        "purge-old-jobs": {
            "task": "maintenance.purge_old_jobs",
            "schedule": crontab(hour=4, minute=30),
        },
    },
)


@worker_init.connect
def setup_worker(**kwargs):
    """Run once when the Celery worker process starts.

    - Configure logging the same way as the API process.
    - Mark jobs left ``active`` past the stale cutoff as failed so clients
      polling them get a final answer.
    """
    from delisio.utils.startup import recover_stale_jobs, setup_logging
    setup_logging(settings.LOG_LEVEL)

    recover_stale_jobs()
    logging.getLogger(__name__).info("Worker ready")
