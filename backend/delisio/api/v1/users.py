"""Signed-in user endpoints: preferences, saved recipes, favorites."""
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Query
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from delisio.api.deps import get_db, paginate
from delisio.errors import NotFoundError
from delisio.models import Favorite, Recipe, UserProfile
from delisio.schemas.common import MessageResponse, PaginatedResponse
from delisio.schemas.recipe import RecipeResponse
from delisio.schemas.user import FavoriteRequest, UserPreferences
from delisio.services.auth import TokenData, get_current_user

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("/me/preferences", response_model=UserPreferences)
def get_preferences(user: TokenData = Depends(get_current_user), db: Session = Depends(get_db)):
    profile = db.get(UserProfile, user.user_id)
    return UserPreferences.model_validate(profile.preferences if profile else {})


@router.put("/me/preferences", response_model=UserPreferences)
def update_preferences(
    body: UserPreferences,
    user: TokenData = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    profile = db.get(UserProfile, user.user_id)
    data = body.model_dump(mode="json")
    if profile is None:
        profile = UserProfile(user_id=user.user_id, preferences=data)
        db.add(profile)
    else:
        profile.preferences = data
    db.commit()
    return body


@router.get("/me/recipes", response_model=PaginatedResponse[RecipeResponse])
def list_my_recipes(
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=20, ge=1, le=100),
    user: TokenData = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    q = db.query(Recipe).filter(Recipe.owner_user_id == user.user_id)
    total = q.count()
    rows = q.order_by(Recipe.created_at.desc()).offset((page - 1) * page_size).limit(page_size).all()
    return PaginatedResponse[RecipeResponse](
        items=[RecipeResponse.model_validate(r) for r in rows],
        **paginate(total, page, page_size),
    )


@router.get("/me/favorites", response_model=list[RecipeResponse])
def list_favorites(user: TokenData = Depends(get_current_user), db: Session = Depends(get_db)):
    rows = (
        db.query(Recipe)
        .join(Favorite, Favorite.recipe_id == Recipe.id)
        .filter(Favorite.user_id == user.user_id)
        .order_by(Favorite.created_at.desc())
        .all()
    )
    return rows


@router.post("/me/favorites", response_model=MessageResponse, status_code=201)
def add_favorite(
    body: FavoriteRequest,
    user: TokenData = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    recipe = db.get(Recipe, body.recipe_id)
    if recipe is None or (recipe.owner_user_id and recipe.owner_user_id != user.user_id):
        raise NotFoundError("Recipe not found")
    db.add(Favorite(user_id=user.user_id, recipe_id=recipe.id))
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        return MessageResponse(message="Already in favorites")
    return MessageResponse(message="Added to favorites")


@router.delete("/me/favorites/{recipe_id}", response_model=MessageResponse)
def remove_favorite(
    recipe_id: str,
    user: TokenData = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    fav = (
        db.query(Favorite)
        .filter(Favorite.user_id == user.user_id, Favorite.recipe_id == recipe_id)
        .first()
    )
    if fav is None:
        raise NotFoundError("Favorite not found")
    db.delete(fav)
    db.commit()
    return MessageResponse(message="Removed from favorites")
