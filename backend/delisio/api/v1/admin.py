"""Admin endpoints — dashboard, job inspection, retry, cancel, cleanup."""
from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy import func
from sqlalchemy.orm import Session

from delisio.api.deps import get_db, get_services, paginate
from delisio.errors import NotFoundError, ValidationError
from delisio.models import Conversation, Favorite, GenerationJob, Recipe, Subscription, UserProfile
from delisio.schemas.admin import CleanupResponse, DashboardResponse, JobOut, JobStats, RetryResponse
from delisio.schemas.common import JobKind, JobStatus, PaginatedResponse
from delisio.schemas.recipe import CancelResponse
from delisio.services.auth import TokenData, require_admin
from delisio.services.context import ServiceContext
from delisio.services.job_queue import CancellationUnavailable
from delisio.services.recipe_maintenance import catalogue_counts, purge_old_jobs

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("/dashboard", response_model=DashboardResponse)
def dashboard(_: TokenData = Depends(require_admin), db: Session = Depends(get_db)):
    user_ids = {uid for (uid,) in db.query(Subscription.user_id).all()}
    user_ids.update(uid for (uid,) in db.query(UserProfile.user_id).all())

    tiers = dict(db.query(Subscription.tier, func.count(Subscription.user_id)).group_by(Subscription.tier).all())
    jobs = dict(db.query(GenerationJob.status, func.count(GenerationJob.id)).group_by(GenerationJob.status).all())

    return DashboardResponse(
        users=len(user_ids),
        recipes=db.query(func.count(Recipe.id)).scalar() or 0,
        catalogue_recipes=db.query(func.count(Recipe.id)).filter(Recipe.owner_user_id.is_(None)).scalar() or 0,
        favorites=db.query(func.count(Favorite.id)).scalar() or 0,
        conversations=db.query(func.count(Conversation.id)).scalar() or 0,
        subscriptions_by_tier=tiers,
        jobs=jobs,
        recipes_by_category=catalogue_counts(db),
    )


@router.get("/jobs", response_model=PaginatedResponse[JobOut])
def list_jobs(
    kind: Optional[JobKind] = None,
    status: Optional[JobStatus] = None,
    user_id: Optional[str] = None,
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=50, ge=1, le=200),
    _: TokenData = Depends(require_admin),
    db: Session = Depends(get_db),
):
    q = db.query(GenerationJob)
    if kind:
        q = q.filter(GenerationJob.kind == kind.value)
    if status:
        q = q.filter(GenerationJob.status == status.value)
    if user_id:
        q = q.filter(GenerationJob.owner_user_id == user_id)
    total = q.count()
    rows = q.order_by(GenerationJob.created_at.desc()).offset((page - 1) * page_size).limit(page_size).all()
    return PaginatedResponse[JobOut](
        items=[JobOut.model_validate(r) for r in rows],
        **paginate(total, page, page_size),
    )


@router.get("/jobs/stats", response_model=JobStats)
def job_stats(_: TokenData = Depends(require_admin), db: Session = Depends(get_db)):
    rows = (
        db.query(GenerationJob.kind, GenerationJob.status, func.count(GenerationJob.id))
        .group_by(GenerationJob.kind, GenerationJob.status)
        .all()
    )
    by_kind: dict[str, dict[str, int]] = {}
    for kind, status, n in rows:
        by_kind.setdefault(kind, {})[status] = n
    total = sum(n for _, _, n in rows)
    failed = sum(n for _, status, n in rows if status == "failed")
    finished = sum(n for _, status, n in rows if status in ("completed", "failed"))

    durations = [
        (completed - started).total_seconds()
        for started, completed in (
            db.query(GenerationJob.started_at, GenerationJob.completed_at)
            .filter(GenerationJob.status == "completed", GenerationJob.started_at.isnot(None))
            .all()
        )
        if completed is not None
    ]
    return JobStats(
        by_kind=by_kind,
        total=total,
        failure_rate=round(failed / finished, 4) if finished else 0.0,
        average_duration_seconds=round(sum(durations) / len(durations), 2) if durations else None,
    )


@router.post("/jobs/{request_id}/retry", response_model=RetryResponse)
def retry_job(
    request_id: str,
    _: TokenData = Depends(require_admin),
    services: ServiceContext = Depends(get_services),
):
    """Queue a fresh job with the payload of a failed or cancelled one."""
    state = services.queue.get_state(request_id)
    if state is None:
        raise NotFoundError("Job not found")
    if state.status not in ("failed", "cancelled"):
        raise ValidationError(f"Only failed or cancelled jobs can be retried (job is {state.status})")
    handle = services.queue.enqueue(
        state.kind,
        dict(state.payload),
        owner_user_id=state.owner_user_id,
        parent_id=state.parent_id,
    )
    logger.info("Admin retry of %s as %s", request_id[:8], handle.request_id[:8])
    return RetryResponse(original_id=request_id, request_id=handle.request_id, status=handle.status)


@router.post("/jobs/{request_id}/cancel", response_model=CancelResponse)
def admin_cancel_job(
    request_id: str,
    _: TokenData = Depends(require_admin),
    services: ServiceContext = Depends(get_services),
):
    before = services.queue.get_state(request_id)
    if before is None:
        return CancelResponse(success=False, message="Job not found", status="not_found")
    if before.is_terminal:
        return CancelResponse(success=False, message=f"Job already {before.status}", status=before.status)
    try:
        status = services.queue.request_cancel(request_id) or "not_found"
    except CancellationUnavailable as exc:
        return CancelResponse(success=False, message="Cancellation is temporarily unavailable", status=exc.status)
    return CancelResponse(
        success=status in ("cancelled", "queued", "active"),
        message="Job cancelled" if status == "cancelled" else "Cancellation requested",
        status=status,
    )


@router.delete("/jobs", response_model=CleanupResponse)
def cleanup_jobs(
    older_than_days: int = Query(default=30, ge=1, le=3650),
    _: TokenData = Depends(require_admin),
    services: ServiceContext = Depends(get_services),
):
    return CleanupResponse(deleted=purge_old_jobs(services.session_factory, older_than_days))
