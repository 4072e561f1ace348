"""Job queue — durable job state plus dispatch to the Celery workers.

``JobQueue`` owns the ``generation_jobs`` rows. ``enqueue()`` persists the
request as ``queued``, registers it with the cancellation registry and
hands a message to the dispatcher; it never waits for the work itself.

Every state change is a conditional UPDATE on the current status, which
keeps transitions monotonic::

    queued  -> active -> completed | failed | cancelled
    queued  -> cancelled | failed

Terminal rows never change again, and a claim succeeds for at most one
worker per attempt.
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Protocol

import redis
from sqlalchemy import func, update
from sqlalchemy.orm import sessionmaker

from delisio.errors import UpstreamFailure, ValidationError
from delisio.models import GenerationJob
from delisio.services.cancellation_registry import CancellationRegistry

logger = logging.getLogger(__name__)

JOB_KINDS = ("recipe", "chat", "image")
ACTIVE_STATUSES = ("queued", "active")
TERMINAL_STATUSES = ("completed", "failed", "cancelled")

TASK_NAMES = {
    "recipe": "generation.recipe",
    "chat": "generation.chat",
    "image": "generation.image",
}


@dataclass
class JobHandle:
    request_id: str
    kind: str
    status: str


@dataclass(frozen=True)
class JobState:
    """Read-only snapshot of a job row."""
    request_id: str
    kind: str
    status: str
    payload: dict
    owner_user_id: str | None
    parent_id: str | None
    progress: int
    current_message: str | None
    result: dict | None
    error: str | None
    attempts: int
    created_at: datetime | None
    started_at: datetime | None
    completed_at: datetime | None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @classmethod
    def from_row(cls, job: GenerationJob) -> "JobState":
        return cls(
            request_id=job.id,
            kind=job.kind,
            status=job.status,
            payload=dict(job.payload or {}),
            owner_user_id=job.owner_user_id,
            parent_id=job.parent_id,
            progress=job.progress_pct,
            current_message=job.current_message,
            result=job.result,
            error=job.error_message,
            attempts=job.attempts,
            created_at=job.created_at,
            started_at=job.started_at,
            completed_at=job.completed_at,
        )


class CancellationUnavailable(Exception):
    """The cancel flag could not be written and the job is already running."""

    def __init__(self, request_id: str, status: str):
        super().__init__(f"Could not flag job {request_id} for cancellation")
        self.request_id = request_id
        self.status = status


# ── Dispatchers ────────────────────────────────────────────────────────

class Dispatcher(Protocol):
    def dispatch(self, kind: str, request_id: str) -> str | None: ...
    def revoke(self, task_id: str) -> None: ...
    def ping(self) -> bool: ...


class CeleryDispatcher:
    """Sends jobs to the Celery worker queues (one queue per job kind)."""

    def __init__(self, app=None):
        self._app = app

    @property
    def app(self):
        if self._app is None:
            from delisio.celery_app import celery_app
            self._app = celery_app
        return self._app

    def dispatch(self, kind: str, request_id: str) -> str | None:
        result = self.app.send_task(
            TASK_NAMES[kind],
            args=[request_id],
            task_id=request_id,
            queue=kind,
        )
        return result.id

    def revoke(self, task_id: str) -> None:
        self.app.control.revoke(task_id)

    def ping(self) -> bool:
        try:
            with self.app.connection_for_write() as conn:
                conn.ensure_connection(max_retries=1)
            return True
        except Exception as exc:
            logger.warning("Broker connection check failed: %s", exc)
            return False


# ── Queue ──────────────────────────────────────────────────────────────

class JobQueue:
    def __init__(
        self,
        session_factory: sessionmaker,
        registry: CancellationRegistry,
        dispatcher: Dispatcher,
    ):
        self.session_factory = session_factory
        self.registry = registry
        self.dispatcher = dispatcher

    # ── Producer side ──────────────────────────────────────────────────

    def enqueue(
        self,
        kind: str,
        payload: dict[str, Any],
        request_id: str | None = None,
        owner_user_id: str | None = None,
        parent_id: str | None = None,
    ) -> JobHandle:
        """Persist a queued job and dispatch it. Returns immediately."""
        if kind not in JOB_KINDS:
            raise ValidationError(f"Unknown job kind '{kind}'")
        request_id = request_id or str(uuid.uuid4())

        with self.session_factory() as db:
            if db.get(GenerationJob, request_id) is not None:
                raise ValidationError(f"Request id {request_id} is already in use")
            db.add(GenerationJob(
                id=request_id,
                kind=kind,
                status="queued",
                payload=payload,
                owner_user_id=owner_user_id,
                parent_id=parent_id,
                current_message="Waiting in queue",
            ))
            db.commit()

        try:
            self.registry.register(request_id)
            task_id = self.dispatcher.dispatch(kind, request_id)
        except Exception as exc:
            logger.error("Could not queue %s job %s: %s", kind, request_id[:8], exc)
            self.fail(request_id, "Job queue is unavailable")
            raise UpstreamFailure("Job queue is unavailable, please try again later") from exc

        if task_id:
            self._update(request_id, None, celery_task_id=task_id)
        logger.info("Enqueued %s job %s", kind, request_id[:8])
        return JobHandle(request_id=request_id, kind=kind, status="queued")

    # ── Reads ──────────────────────────────────────────────────────────

    def get_state(self, request_id: str) -> JobState | None:
        with self.session_factory() as db:
            job = db.get(GenerationJob, request_id)
            return JobState.from_row(job) if job else None

    def children(self, parent_id: str) -> list[JobState]:
        with self.session_factory() as db:
            rows = (
                db.query(GenerationJob)
                .filter(GenerationJob.parent_id == parent_id)
                .order_by(GenerationJob.created_at)
                .all()
            )
            return [JobState.from_row(r) for r in rows]

    def counts(self, kind: str | None = None) -> dict[str, int]:
        """Number of jobs per status, optionally for one kind."""
        with self.session_factory() as db:
            q = db.query(GenerationJob.status, func.count(GenerationJob.id))
            if kind:
                q = q.filter(GenerationJob.kind == kind)
            rows = q.group_by(GenerationJob.status).all()
        out = {s: 0 for s in ACTIVE_STATUSES + TERMINAL_STATUSES}
        out.update({status: n for status, n in rows})
        return out

    # ── Worker side transitions ────────────────────────────────────────

    def claim(self, request_id: str, attempt: int = 0) -> JobState | None:
        """Move a job to ``active`` for *attempt*; None when not claimable.

        The first attempt claims a ``queued`` row. A retry claims the
        ``active`` row left by the previous attempt, matched on its attempt
        count, so two deliveries of the same attempt cannot both win.
        """
        now = datetime.now(timezone.utc)
        if attempt == 0:
            expected = (GenerationJob.status == "queued",)
            values = {"status": "active", "started_at": now, "attempts": 1,
                      "current_message": "Processing"}
        else:
            expected = (GenerationJob.status == "active", GenerationJob.attempts == attempt)
            values = {"attempts": attempt + 1, "current_message": f"Retrying (attempt {attempt + 1})"}

        with self.session_factory() as db:
            res = db.execute(
                update(GenerationJob)
                .where(GenerationJob.id == request_id, *expected)
                .values(**values)
            )
            db.commit()
            if res.rowcount != 1:
                return None
            return JobState.from_row(db.get(GenerationJob, request_id))

    def set_progress(self, request_id: str, percentage: int, message: str | None = None) -> bool:
        values: dict[str, Any] = {"progress_pct": max(0, min(100, int(percentage)))}
        if message is not None:
            values["current_message"] = message
        return self._update(request_id, ("active",), **values)

    def record_retry(self, request_id: str, error: str) -> bool:
        """Keep the job active while the worker schedules another attempt."""
        return self._update(
            request_id, ("active",),
            error_message=error, current_message="Waiting to retry",
        )

    def complete(self, request_id: str, result: dict[str, Any]) -> bool:
        return self._finish(
            request_id, ("active",), "completed",
            result=result, progress_pct=100, error_message=None,
            current_message="Completed",
        )

    def fail(self, request_id: str, error: str) -> bool:
        return self._finish(
            request_id, ACTIVE_STATUSES, "failed",
            error_message=error, current_message="Failed",
        )

    def mark_cancelled(self, request_id: str) -> bool:
        return self._finish(
            request_id, ACTIVE_STATUSES, "cancelled",
            result=None, current_message="Cancelled by user",
        )

    def cancel_queued(self, request_id: str) -> bool:
        """Cancel a job no worker has picked up yet and revoke its message."""
        if not self._finish(request_id, ("queued",), "cancelled", result=None, current_message="Cancelled by user"):
            return False
        try:
            self.dispatcher.revoke(request_id)
        except Exception as exc:
            # A message that slips through finds the row cancelled and is skipped
            logger.warning("Could not revoke task %s: %s", request_id[:8], exc)
        return True

    def request_cancel(self, request_id: str) -> str | None:
        """Flag *request_id* for cancellation; returns the job status afterwards.

        Queued jobs are cancelled on the spot. Active jobs keep running until
        their next checkpoint. None means the job does not exist. Raises
        ``CancellationUnavailable`` when the registry is unreachable and the
        job has already left the queue.
        """
        state = self.get_state(request_id)
        if state is None:
            return None
        if state.is_terminal:
            return state.status
        flagged = True
        try:
            if not self.registry.cancel(request_id):
                # Record expired or lost; recreate it so the worker still sees the flag
                self.registry.register(request_id)
                self.registry.cancel(request_id)
        except redis.RedisError as exc:
            logger.warning("Could not flag %s for cancellation: %s", request_id[:8], exc)
            flagged = False
        if self.cancel_queued(request_id):
            return "cancelled"
        current = self.get_state(request_id)
        if current is None:
            return None
        if not flagged and not current.is_terminal:
            raise CancellationUnavailable(request_id, current.status)
        return current.status

    # ── Internal helpers ───────────────────────────────────────────────

    def _finish(self, request_id: str, from_statuses: tuple[str, ...], status: str, **values) -> bool:
        changed = self._update(
            request_id, from_statuses,
            status=status, completed_at=datetime.now(timezone.utc), **values,
        )
        if changed:
            self.registry.cleanup(request_id)
            logger.info("Job %s -> %s", request_id[:8], status)
        return changed

    def _update(self, request_id: str, from_statuses: tuple[str, ...] | None, **values) -> bool:
        stmt = update(GenerationJob).where(GenerationJob.id == request_id)
        if from_statuses is not None:
            stmt = stmt.where(GenerationJob.status.in_(from_statuses))
        with self.session_factory() as db:
            res = db.execute(stmt.values(**values))
            db.commit()
            return res.rowcount == 1
