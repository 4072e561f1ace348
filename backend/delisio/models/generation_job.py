"""GenerationJob model — durable state of one queued recipe/chat/image job."""
import uuid
from datetime import datetime, timezone
from sqlalchemy import String, Text, Integer, DateTime, JSON, Index
from sqlalchemy.orm import Mapped, mapped_column
from delisio.database import Base


class GenerationJob(Base):
    __tablename__ = "generation_jobs"

    # The request id handed to the client doubles as the primary key
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    kind: Mapped[str] = mapped_column(String(20), nullable=False)  # recipe | chat | image
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="queued")  # queued | active | completed | failed | cancelled
    payload: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    owner_user_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    parent_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    celery_task_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    progress_pct: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    current_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    result: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        Index("ix_generation_jobs_kind_status", "kind", "status"),
        Index("ix_generation_jobs_owner", "owner_user_id"),
        Index("ix_generation_jobs_parent", "parent_id"),
    )

    def __repr__(self) -> str:
        return f"<GenerationJob {self.id[:8]} {self.kind} ({self.status})>"
