"""SQLAlchemy ORM models package."""
from delisio.models.generation_job import GenerationJob
from delisio.models.recipe import Recipe, Favorite
from delisio.models.user_profile import UserProfile
from delisio.models.conversation import Conversation, ChatMessage
from delisio.models.subscription import Subscription, UsageRecord

__all__ = [
    "GenerationJob",
    "Recipe",
    "Favorite",
    "UserProfile",
    "Conversation",
    "ChatMessage",
    "Subscription",
    "UsageRecord",
]
