"""Aggregate API v1 router — mounts all sub-routers."""
from fastapi import APIRouter
from delisio.api.v1 import admin, chat, recipes, subscriptions, users, websocket

router = APIRouter(prefix="/api/v1")

router.include_router(recipes.router, prefix="/recipes", tags=["Recipes"])
router.include_router(chat.router, prefix="/chat", tags=["Chat"])
router.include_router(users.router, prefix="/users", tags=["Users"])
router.include_router(subscriptions.router, prefix="/subscriptions", tags=["Subscriptions"])
router.include_router(admin.router, prefix="/admin", tags=["Admin"])
router.include_router(websocket.router, tags=["WebSocket"])
