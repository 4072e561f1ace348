"""Recipe request / response schemas."""
from datetime import datetime
from typing import Any
from pydantic import Field, field_validator

from delisio.schemas.common import CamelModel, JobStatus


class RecipeGenerateRequest(CamelModel):
    query: str = Field(..., min_length=2, max_length=300)
    save: bool = True
    request_id: str | None = Field(default=None, max_length=36)

    @field_validator("query")
    @classmethod
    def strip_query(cls, v: str) -> str:
        v = v.strip()
        if len(v) < 2:
            raise ValueError("query must contain at least 2 characters")
        return v


class RecipeStep(CamelModel):
    text: str
    illustration: str | None = None
    image_url: str | None = None


class RecipeResponse(CamelModel):
    id: str
    title: str
    servings: int | None = None
    ingredients: list[str] = []
    steps: list[RecipeStep] = []
    nutrition: dict[str, Any] | None = None
    prep_time_minutes: int | None = None
    cook_time_minutes: int | None = None
    total_time_minutes: int | None = None
    category: str = "other"
    tags: list[str] = []
    quality_score: float | None = None
    thumbnail_url: str | None = None
    query: str | None = None
    created_at: datetime | None = None


class PartialRecipe(CamelModel):
    title: str
    servings: int | None = None
    ingredients: list[str] = []
    steps: list[RecipeStep] = []
    nutrition: dict[str, Any] | None = None
    thumbnail_url: str | None = None
    progress: int = 0


class RecipeJobAccepted(CamelModel):
    request_id: str
    status: JobStatus = JobStatus.QUEUED
    message: str = "Recipe generation started"


class RecipeStatusResponse(CamelModel):
    request_id: str
    status: JobStatus
    progress: int = 0
    message: str | None = None
    recipe: RecipeResponse | None = None
    partial_recipe: PartialRecipe | None = None
    duplicate_of: str | None = None
    error: str | None = None


class CancelRequest(CamelModel):
    request_id: str = Field(..., min_length=1, max_length=36)


class CancelResponse(CamelModel):
    success: bool
    message: str
    status: str  # job status after the call, or "not_found"


class QueueStatusResponse(CamelModel):
    queue_configured: bool
    queue_connected: bool
    counts: dict[str, int]


class CategoryResponse(CamelModel):
    id: str
    name: str
    description: str
    recipe_count: int = 0
