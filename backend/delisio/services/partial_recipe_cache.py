"""Partial recipe snapshots shown while step images are still rendering.

The recipe worker stores the text-complete recipe under
``recipe:{request_id}:partial``; each image job fills in its step's URL.
The status endpoint returns the snapshot so clients can render the
recipe before the job finishes.
"""
from __future__ import annotations

import json
import logging
import threading
import time
from typing import Any

import redis

logger = logging.getLogger(__name__)

TEXT_PROGRESS = 40
IMAGE_PROGRESS = 60


def partial_key(request_id: str) -> str:
    return f"recipe:{request_id}:partial"


def calculate_progress(recipe: dict[str, Any] | None) -> int:
    """40% once the text exists, plus a share of 60% per illustrated step."""
    if not recipe:
        return 0
    steps = recipe.get("steps") or []
    if not steps:
        return TEXT_PROGRESS
    done = sum(1 for s in steps if isinstance(s, dict) and s.get("image_url"))
    return TEXT_PROGRESS + round(IMAGE_PROGRESS * done / len(steps))


class PartialRecipeCache:
    """Redis-backed snapshot cache with an in-process fallback."""

    def __init__(self, client: redis.Redis | None = None, ttl_seconds: int = 3600):
        self._redis = client
        self.ttl_seconds = ttl_seconds
        self._local: dict[str, tuple[float, str]] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_url(cls, url: str | None, ttl_seconds: int = 3600) -> "PartialRecipeCache":
        return cls(redis.from_url(url) if url else None, ttl_seconds)

    def get(self, request_id: str) -> dict[str, Any] | None:
        raw: str | bytes | None = None
        if self._redis is not None:
            try:
                raw = self._redis.get(partial_key(request_id))
            except redis.RedisError as exc:
                logger.warning("Partial recipe read failed, using local cache: %s", exc)
        if raw is None:
            with self._lock:
                entry = self._local.get(partial_key(request_id))
                if entry and entry[0] > time.time():
                    raw = entry[1]
        return json.loads(raw) if raw else None

    def set(self, request_id: str, recipe: dict[str, Any]) -> None:
        raw = json.dumps(recipe, default=str)
        if self._redis is not None:
            try:
                self._redis.set(partial_key(request_id), raw, ex=self.ttl_seconds)
                return
            except redis.RedisError as exc:
                logger.warning("Partial recipe write failed, using local cache: %s", exc)
        with self._lock:
            self._local[partial_key(request_id)] = (time.time() + self.ttl_seconds, raw)

    def set_step_image(self, request_id: str, step_index: int, image_url: str) -> dict[str, Any] | None:
        """Record one step's image and return the updated snapshot."""
        recipe = self.get(request_id)
        if not recipe:
            return None
        steps = recipe.get("steps") or []
        if 0 <= step_index < len(steps):
            steps[step_index]["image_url"] = image_url
            if step_index == len(steps) - 1:
                recipe["thumbnail_url"] = image_url
        recipe["progress"] = calculate_progress(recipe)
        self.set(request_id, recipe)
        return recipe

    def delete(self, request_id: str) -> None:
        if self._redis is not None:
            try:
                self._redis.delete(partial_key(request_id))
            except redis.RedisError as exc:
                logger.debug("Partial recipe delete failed: %s", exc)
        with self._lock:
            self._local.pop(partial_key(request_id), None)
