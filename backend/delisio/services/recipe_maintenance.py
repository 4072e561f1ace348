"""Periodic upkeep of the global recipe catalogue.

Run nightly by the ``maintenance.recipe_maintenance`` beat task:

  - collapse duplicate catalogue recipes (same similarity hash), keeping
    the oldest copy
  - score recipes that have no quality score yet
  - (re)categorise recipes whose category is missing or unknown
  - delete recipes with no title, ingredients or steps

Each step commits in batches so a long run does not hold one huge
transaction.
"""
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy import func
from sqlalchemy.orm import Session, sessionmaker

from delisio.models import GenerationJob, Recipe
from delisio.services.categorization import CATEGORY_IDS, categorize
from delisio.services.duplicate_detection import similarity_hash
from delisio.services.quality_checker import evaluate_recipe

logger = logging.getLogger(__name__)

BATCH_SIZE = 50


@dataclass
class MaintenanceReport:
    duplicates_removed: int = 0
    scored: int = 0
    recategorized: int = 0
    invalid_removed: int = 0

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


def _as_dict(row: Recipe) -> dict:
    return {
        "title": row.title,
        "servings": row.servings,
        "ingredients": row.ingredients or [],
        "steps": row.steps or [],
        "nutrition": row.nutrition,
    }


def remove_catalogue_duplicates(db: Session) -> int:
    """Delete newer global recipes that share a similarity hash with an older one."""
    rows = (
        db.query(Recipe)
        .filter(Recipe.owner_user_id.is_(None))
        .order_by(Recipe.created_at)
        .all()
    )
    seen: set[str] = set()
    removed = 0
    for row in rows:
        if not row.similarity_hash:
            row.similarity_hash = similarity_hash(_as_dict(row))
        if row.similarity_hash in seen:
            db.delete(row)
            removed += 1
        else:
            seen.add(row.similarity_hash)
    db.commit()
    return removed


def score_unscored(db: Session, pass_threshold: float = 7.0) -> int:
    scored = 0
    while True:
        batch = db.query(Recipe).filter(Recipe.quality_score.is_(None)).limit(BATCH_SIZE).all()
        if not batch:
            return scored
        for row in batch:
            row.quality_score = evaluate_recipe(_as_dict(row), pass_threshold).overall
        db.commit()
        scored += len(batch)


def recategorize(db: Session, force: bool = False) -> int:
    q = db.query(Recipe)
    if not force:
        q = q.filter((Recipe.category.is_(None)) | (Recipe.category.not_in(sorted(CATEGORY_IDS))))
    changed = 0
    for row in q.all():
        category, tags = categorize(_as_dict(row))
        if category != row.category or tags != (row.tags or []):
            row.category, row.tags = category, tags
            changed += 1
    db.commit()
    return changed


def remove_invalid_recipes(db: Session) -> int:
    removed = 0
    for row in db.query(Recipe).all():
        if not (row.title or "").strip() or not row.ingredients or not row.steps:
            db.delete(row)
            removed += 1
    db.commit()
    return removed


def run_recipe_maintenance(session_factory: sessionmaker, pass_threshold: float = 7.0) -> MaintenanceReport:
    report = MaintenanceReport()
    with session_factory() as db:
        report.duplicates_removed = remove_catalogue_duplicates(db)
        report.scored = score_unscored(db, pass_threshold)
        report.recategorized = recategorize(db)
        report.invalid_removed = remove_invalid_recipes(db)
    logger.info("Recipe maintenance finished: %s", report.as_dict())
    return report


def purge_old_jobs(session_factory: sessionmaker, retention_days: int, now: datetime | None = None) -> int:
    """Delete finished jobs older than *retention_days*."""
    cutoff = (now or datetime.now(timezone.utc)) - timedelta(days=retention_days)
    with session_factory() as db:
        count = (
            db.query(GenerationJob)
            .filter(
                GenerationJob.status.in_(("completed", "failed", "cancelled")),
                GenerationJob.created_at < cutoff,
            )
            .delete(synchronize_session=False)
        )
        db.commit()
    if count:
        logger.info("Purged %d finished job(s) older than %d days", count, retention_days)
    return count


def catalogue_counts(db: Session) -> dict[str, int]:
    """Number of global recipes per category."""
    rows = (
        db.query(Recipe.category, func.count(Recipe.id))
        .filter(Recipe.owner_user_id.is_(None))
        .group_by(Recipe.category)
        .all()
    )
    return {category: n for category, n in rows}
