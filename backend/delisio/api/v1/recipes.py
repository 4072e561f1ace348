"""Recipe endpoints — generate, poll, cancel, browse."""
from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy import or_
from sqlalchemy.orm import Session

from delisio.api.deps import get_db, get_services, paginate
from delisio.errors import NotFoundError, PaymentRequiredError
from delisio.models import Recipe, UserProfile
from delisio.schemas.common import PaginatedResponse
from delisio.schemas.recipe import (
    CancelRequest,
    CancelResponse,
    CategoryResponse,
    PartialRecipe,
    QueueStatusResponse,
    RecipeGenerateRequest,
    RecipeJobAccepted,
    RecipeResponse,
    RecipeStatusResponse,
)
from delisio.services import subscription_service
from delisio.services.auth import TokenData, get_current_user_optional
from delisio.services.categorization import CATEGORIES
from delisio.services.context import ServiceContext
from delisio.services.job_queue import CancellationUnavailable
from delisio.services.recipe_maintenance import catalogue_counts

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("", status_code=202, response_model=RecipeJobAccepted)
def generate_recipe(
    body: RecipeGenerateRequest,
    user: Optional[TokenData] = Depends(get_current_user_optional),
    services: ServiceContext = Depends(get_services),
    db: Session = Depends(get_db),
):
    """Queue a recipe generation job and return its request id."""
    preferences = None
    image_tier = "free"
    owner = user.user_id if user else None

    if owner:
        if not subscription_service.can_use(db, owner, subscription_service.RECIPE_GENERATION):
            raise PaymentRequiredError(
                "You have reached your recipe generation limit for this period. "
                "Upgrade your plan to generate more recipes.",
                code="RECIPE_LIMIT_REACHED",
            )
        profile = db.get(UserProfile, owner)
        preferences = profile.preferences if profile else None
        image_tier = subscription_service.image_tier(db, owner)

    handle = services.queue.enqueue(
        "recipe",
        {
            "query": body.query,
            "save": body.save,
            "preferences": preferences,
            "image_tier": image_tier,
        },
        request_id=body.request_id,
        owner_user_id=owner,
    )
    if owner:
        subscription_service.track_usage(db, owner, subscription_service.RECIPE_GENERATION)

    return RecipeJobAccepted(request_id=handle.request_id)


@router.get("/status/{request_id}", response_model=RecipeStatusResponse)
def get_recipe_status(request_id: str, services: ServiceContext = Depends(get_services)):
    """Current state of a recipe job. Read-only."""
    state = services.queue.get_state(request_id)
    if state is None or state.kind != "recipe":
        raise NotFoundError("Recipe request not found")

    resp = RecipeStatusResponse(
        request_id=state.request_id,
        status=state.status,
        progress=state.progress,
        message=state.current_message,
    )
    if state.status == "completed" and state.result:
        resp.recipe = RecipeResponse.model_validate(state.result["recipe"])
        resp.duplicate_of = state.result.get("duplicate_of")
    elif state.status == "failed":
        resp.error = state.error or "Recipe generation failed"
    elif state.status == "active":
        partial = services.partial_cache.get(request_id)
        if partial:
            resp.partial_recipe = PartialRecipe.model_validate(partial)
    return resp


@router.post("/cancel", response_model=CancelResponse)
def cancel_recipe(
    body: CancelRequest,
    user: Optional[TokenData] = Depends(get_current_user_optional),
    services: ServiceContext = Depends(get_services),
):
    """Request cancellation of a recipe job.

    ``success`` is False both for unknown ids and for jobs that already
    finished; ``status`` tells the two apart (``not_found`` or the final
    job status).
    """
    request_id = body.request_id
    state = services.queue.get_state(request_id)
    if (
        state is None
        or state.kind != "recipe"
        or (state.owner_user_id and (user is None or user.user_id != state.owner_user_id))
    ):
        return CancelResponse(success=False, message="Request not found or already finished", status="not_found")
    if state.is_terminal:
        return CancelResponse(success=False, message=f"Request already {state.status}", status=state.status)

    try:
        status = services.queue.request_cancel(request_id) or "not_found"
    except CancellationUnavailable as exc:
        return CancelResponse(
            success=False,
            message="Cancellation is temporarily unavailable, please try again",
            status=exc.status,
        )
    if status == "cancelled":
        return CancelResponse(success=True, message="Request cancelled", status=status)
    if status in ("completed", "failed", "not_found"):
        return CancelResponse(success=False, message=f"Request already {status}", status=status)
    return CancelResponse(success=True, message="Cancellation requested", status=status)


@router.get("/queue-status", response_model=QueueStatusResponse)
def recipe_queue_status(services: ServiceContext = Depends(get_services)):
    return QueueStatusResponse(
        queue_configured=services.queue.dispatcher is not None,
        queue_connected=services.queue.dispatcher.ping(),
        counts=services.queue.counts("recipe"),
    )


@router.get("/categories", response_model=list[CategoryResponse])
def list_categories(db: Session = Depends(get_db)):
    counts = catalogue_counts(db)
    return [
        CategoryResponse(id=c.id, name=c.name, description=c.description, recipe_count=counts.get(c.id, 0))
        for c in CATEGORIES
    ]


@router.get("/discover", response_model=PaginatedResponse[RecipeResponse])
def discover_recipes(
    category: Optional[str] = None,
    search: Optional[str] = Query(default=None, max_length=100),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=20, ge=1, le=100),
    db: Session = Depends(get_db),
):
    """Browse the global catalogue, best-rated first."""
    q = db.query(Recipe).filter(Recipe.owner_user_id.is_(None))
    if category:
        q = q.filter(Recipe.category == category)
    if search:
        like = f"%{search.strip()}%"
        q = q.filter(or_(Recipe.title.ilike(like), Recipe.query.ilike(like)))
    total = q.count()
    rows = (
        q.order_by(Recipe.quality_score.desc().nulls_last(), Recipe.created_at.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
        .all()
    )
    return PaginatedResponse[RecipeResponse](
        items=[RecipeResponse.model_validate(r) for r in rows],
        **paginate(total, page, page_size),
    )


@router.get("/{recipe_id}", response_model=RecipeResponse)
def get_recipe(
    recipe_id: str,
    user: Optional[TokenData] = Depends(get_current_user_optional),
    db: Session = Depends(get_db),
):
    recipe = db.get(Recipe, recipe_id)
    if recipe is None or (recipe.owner_user_id and (user is None or user.user_id != recipe.owner_user_id)):
        raise NotFoundError("Recipe not found")
    return recipe
