"""User preference, favorite and subscription schemas."""
from datetime import datetime
from pydantic import Field

from delisio.schemas.common import CamelModel, CookingSkill, SubscriptionTier


class UserPreferences(CamelModel):
    dietary_restrictions: list[str] = Field(default_factory=list, max_length=20)
    allergies: list[str] = Field(default_factory=list, max_length=20)
    favorite_cuisines: list[str] = Field(default_factory=list, max_length=20)
    cooking_skill: CookingSkill | None = None


class FavoriteRequest(CamelModel):
    recipe_id: str


class FeatureUsage(CamelModel):
    limit: int  # -1 means unlimited
    used: int
    remaining: int  # -1 means unlimited


class SubscriptionStatusResponse(CamelModel):
    tier: SubscriptionTier
    status: str
    current_period_start: datetime
    current_period_end: datetime
    recipe_generations: FeatureUsage
    ai_chat_replies: FeatureUsage
