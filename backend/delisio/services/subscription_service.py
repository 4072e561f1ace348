"""Subscription tiers, feature limits and usage tracking.

Every signed-in user has a subscription row; one is created on the free
tier the first time it is needed. Usage is counted per feature and per
billing period. Periods roll forward automatically when they lapse, which
starts fresh counters. Billing itself (checkout, webhooks) lives on the
payments platform and is not handled here.
"""
from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from delisio.models import Subscription, UsageRecord

logger = logging.getLogger(__name__)

RECIPE_GENERATION = "recipe_generation"
AI_CHAT_REPLY = "ai_chat_reply"

PERIOD = timedelta(days=30)

FEATURE_LIMITS: dict[str, dict[str, float]] = {
    "free": {RECIPE_GENERATION: 1, AI_CHAT_REPLY: 3},
    "basic": {RECIPE_GENERATION: 10, AI_CHAT_REPLY: 100},
    "premium": {RECIPE_GENERATION: math.inf, AI_CHAT_REPLY: math.inf},
}


def _aware(dt: datetime) -> datetime:
    # SQLite hands back naive datetimes
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def feature_limit(tier: str, feature: str) -> float:
    return FEATURE_LIMITS.get(tier, FEATURE_LIMITS["free"]).get(feature, 0)


def get_or_create_subscription(db: Session, user_id: str, now: datetime | None = None) -> Subscription:
    """Return the user's subscription, creating a free one and rolling the period."""
    now = now or datetime.now(timezone.utc)
    sub = db.get(Subscription, user_id)
    if sub is None:
        sub = Subscription(
            user_id=user_id,
            tier="free",
            status="active",
            current_period_start=now,
            current_period_end=now + PERIOD,
        )
        db.add(sub)
        try:
            db.commit()
            logger.info("Created free subscription for user %s", user_id)
        except IntegrityError:
            # Created concurrently by another request
            db.rollback()
            sub = db.get(Subscription, user_id)

    start, end = _aware(sub.current_period_start), _aware(sub.current_period_end)
    if now >= end:
        while now >= end:
            start, end = end, end + PERIOD
        sub.current_period_start, sub.current_period_end = start, end
        db.commit()
        logger.info("Rolled subscription period for user %s to %s", user_id, start.date())
    return sub


def get_usage(db: Session, user_id: str, feature: str, period_start: datetime) -> int:
    rec = (
        db.query(UsageRecord)
        .filter(
            UsageRecord.user_id == user_id,
            UsageRecord.feature == feature,
            UsageRecord.period_start == _aware(period_start),
        )
        .first()
    )
    return rec.count if rec else 0


def remaining(db: Session, user_id: str, feature: str) -> float:
    """How many uses are left this period (``math.inf`` for unlimited)."""
    sub = get_or_create_subscription(db, user_id)
    limit = feature_limit(sub.tier, feature)
    if math.isinf(limit):
        return limit
    return max(0, limit - get_usage(db, user_id, feature, sub.current_period_start))


def can_use(db: Session, user_id: str, feature: str) -> bool:
    return remaining(db, user_id, feature) > 0


def track_usage(db: Session, user_id: str, feature: str) -> int:
    """Count one use of *feature* in the current period; returns the new count."""
    sub = get_or_create_subscription(db, user_id)
    period_start = _aware(sub.current_period_start)
    rec = (
        db.query(UsageRecord)
        .filter(
            UsageRecord.user_id == user_id,
            UsageRecord.feature == feature,
            UsageRecord.period_start == period_start,
        )
        .first()
    )
    if rec is None:
        rec = UsageRecord(user_id=user_id, feature=feature, period_start=period_start, count=0)
        db.add(rec)
    rec.count += 1
    db.commit()
    return rec.count


def image_tier(db: Session, user_id: str | None) -> str:
    """Tier used to pick image quality; anonymous requests get the free tier."""
    if not user_id:
        return "free"
    return get_or_create_subscription(db, user_id).tier


def subscription_status(db: Session, user_id: str) -> dict[str, Any]:
    """Tier, period and per-feature usage; unlimited values are reported as -1."""
    sub = get_or_create_subscription(db, user_id)

    def _feature(feature: str) -> dict[str, int]:
        limit = feature_limit(sub.tier, feature)
        used = get_usage(db, user_id, feature, sub.current_period_start)
        if math.isinf(limit):
            return {"limit": -1, "used": used, "remaining": -1}
        return {"limit": int(limit), "used": used, "remaining": max(0, int(limit) - used)}

    return {
        "tier": sub.tier,
        "status": sub.status,
        "current_period_start": _aware(sub.current_period_start),
        "current_period_end": _aware(sub.current_period_end),
        "recipe_generations": _feature(RECIPE_GENERATION),
        "ai_chat_replies": _feature(AI_CHAT_REPLY),
    }
