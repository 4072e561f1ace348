"""Admin analytics schemas."""
from datetime import datetime
from typing import Any

from delisio.schemas.common import CamelModel, JobKind, JobStatus


class JobOut(CamelModel):
    id: str
    kind: JobKind
    status: JobStatus
    owner_user_id: str | None = None
    parent_id: str | None = None
    progress_pct: int = 0
    current_message: str | None = None
    error_message: str | None = None
    attempts: int = 0
    payload: dict[str, Any] = {}
    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None


class JobStats(CamelModel):
    by_kind: dict[str, dict[str, int]]
    total: int
    failure_rate: float
    average_duration_seconds: float | None = None


class DashboardResponse(CamelModel):
    users: int
    recipes: int
    catalogue_recipes: int
    favorites: int
    conversations: int
    subscriptions_by_tier: dict[str, int]
    jobs: dict[str, int]
    recipes_by_category: dict[str, int]


class RetryResponse(CamelModel):
    original_id: str
    request_id: str
    status: JobStatus


class CleanupResponse(CamelModel):
    deleted: int
