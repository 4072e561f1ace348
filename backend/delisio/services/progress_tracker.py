"""Progress reporting for a running generation job.

Persists progress on the job row (for polling) and broadcasts it on the
Redis channel ``job:{request_id}`` (for the WebSocket endpoint). Redis is
optional: without a URL, or when the server is unreachable, updates are
still written to the database.
"""
from __future__ import annotations

import json
import logging
from typing import Any

import redis

from delisio.services.job_queue import JobQueue

logger = logging.getLogger(__name__)


class ProgressTracker:
    def __init__(self, queue: JobQueue, request_id: str, redis_url: str | None = None):
        self.queue = queue
        self.request_id = request_id
        self._redis_url = redis_url
        self._redis: redis.Redis | None = None

    # ── Redis connection (lazy, tolerant of failure) ───────────────────

    @property
    def redis_client(self) -> redis.Redis | None:
        if self._redis is None and self._redis_url:
            try:
                self._redis = redis.from_url(self._redis_url)
            except (redis.RedisError, ValueError) as exc:
                logger.warning("Could not connect to Redis for progress updates: %s", exc)
                self._redis_url = None
        return self._redis

    # ── Public API ─────────────────────────────────────────────────────

    def update(self, percentage: int, message: str) -> None:
        self.queue.set_progress(self.request_id, percentage, message)
        self._publish(percentage, message, "active")
        logger.info("Job %s: %s (%d%%)", self.request_id[:8], message, percentage)

    def finish_completed(self, result: dict[str, Any]) -> None:
        self._publish(100, "Completed", "completed", extra={"result": result})

    def finish_failed(self, error: str) -> None:
        self._publish(0, f"Error: {error}", "failed", extra={"error": error})

    def finish_cancelled(self) -> None:
        self._publish(0, "Cancelled by user", "cancelled")

    # ── Internal helpers ───────────────────────────────────────────────

    def _publish(self, percentage: int, message: str, status: str, extra: dict | None = None) -> None:
        rc = self.redis_client
        if rc is None:
            return
        payload: dict[str, Any] = {
            "request_id": self.request_id,
            "status": status,
            "progress": percentage,
            "message": message,
        }
        if extra:
            payload.update(extra)
        try:
            rc.publish(f"job:{self.request_id}", json.dumps(payload, default=str))
        except redis.RedisError as exc:
            logger.debug("Progress publish failed for %s: %s", self.request_id[:8], exc)
