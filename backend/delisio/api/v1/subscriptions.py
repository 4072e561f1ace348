"""Subscription status endpoint."""
from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from delisio.api.deps import get_db
from delisio.schemas.user import SubscriptionStatusResponse
from delisio.services.auth import TokenData, get_current_user
from delisio.services.subscription_service import subscription_status

router = APIRouter()


@router.get("/me", response_model=SubscriptionStatusResponse)
def my_subscription(user: TokenData = Depends(get_current_user), db: Session = Depends(get_db)):
    return SubscriptionStatusResponse.model_validate(subscription_status(db, user.user_id))
