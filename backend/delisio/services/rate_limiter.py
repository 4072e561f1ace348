"""Tiered fixed-window rate limiting.

Requests are classified by path into a bucket, each with its own cap per
window (15 minutes by default):

  ==================  ====  ==========================================
  bucket              cap   paths
  ==================  ====  ==========================================
  recipe_status       60    /api/v1/recipes/status/...
  recipes             15    /api/v1/recipes...
  chat                50    /api/v1/chat...
  default             100   everything else
  ==================  ====  ==========================================

The identity is the bearer-token user id when a valid token is sent,
otherwise the client address. Authenticated identities get the higher of
the bucket cap and the authenticated cap (150).

Windows are fixed: the counter starts at the first hit and resets when
the window expires, so a burst straddling a boundary can reach twice the
cap. Counters live in Redis so every API instance shares them; when Redis
fails the limiter falls back to per-process counters.
"""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass

import redis
import redis.asyncio as aioredis
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from delisio.errors import error_body
from delisio.services.auth import user_id_from_header

logger = logging.getLogger(__name__)

EXEMPT_PATHS = ("/health",)
RATE_LIMIT_MESSAGE = "Too many requests, please try again later"


@dataclass(frozen=True)
class WindowHit:
    count: int
    reset_in: int  # seconds until the window resets


@dataclass(frozen=True)
class Decision:
    allowed: bool
    bucket: str
    limit: int
    remaining: int
    reset_in: int


# ── Policy ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class RateLimitPolicy:
    window_seconds: int = 900
    default: int = 100
    recipes: int = 15
    recipe_status: int = 60
    chat: int = 50
    authenticated: int = 150
    api_prefix: str = "/api/v1"

    @classmethod
    def from_settings(cls, settings) -> "RateLimitPolicy":
        return cls(
            window_seconds=settings.RATE_LIMIT_WINDOW_SECONDS,
            default=settings.RATE_LIMIT_DEFAULT,
            recipes=settings.RATE_LIMIT_RECIPES,
            recipe_status=settings.RATE_LIMIT_RECIPE_STATUS,
            chat=settings.RATE_LIMIT_CHAT,
            authenticated=settings.RATE_LIMIT_AUTHENTICATED,
        )

    def classify(self, path: str) -> tuple[str, int]:
        """Bucket name and cap for *path*; the most specific prefix wins."""
        p = self.api_prefix
        if path.startswith(f"{p}/recipes/status"):
            return "recipe_status", self.recipe_status
        if path == f"{p}/recipes" or path.startswith(f"{p}/recipes/"):
            return "recipes", self.recipes
        if path == f"{p}/chat" or path.startswith(f"{p}/chat/"):
            return "chat", self.chat
        return "default", self.default

    def limit_for(self, bucket_cap: int, authenticated: bool) -> int:
        return max(bucket_cap, self.authenticated) if authenticated else bucket_cap


# ── Stores ─────────────────────────────────────────────────────────────

class MemoryWindowStore:
    """Per-process fixed windows."""

    def __init__(self, clock=time.monotonic):
        self._windows: dict[str, tuple[float, int]] = {}
        self._lock = threading.Lock()
        self._clock = clock

    async def hit(self, key: str, window_seconds: int) -> WindowHit:
        now = self._clock()
        with self._lock:
            start, count = self._windows.get(key, (now, 0))
            if now - start >= window_seconds:
                start, count = now, 0
            count += 1
            self._windows[key] = (start, count)
            if len(self._windows) > 10_000:
                self._prune(now, window_seconds)
        reset_in = max(1, int(round(start + window_seconds - now)))
        return WindowHit(count=count, reset_in=reset_in)

    def _prune(self, now: float, window_seconds: int) -> None:
        expired = [k for k, (s, _) in self._windows.items() if now - s >= window_seconds]
        for k in expired:
            del self._windows[k]


class RedisWindowStore:
    """Shared fixed windows: ``SET NX EX`` + ``INCR`` + ``TTL`` in one transaction."""

    def __init__(self, client: aioredis.Redis, key_prefix: str = "ratelimit:"):
        self._redis = client
        self.key_prefix = key_prefix

    async def hit(self, key: str, window_seconds: int) -> WindowHit:
        full_key = self.key_prefix + key
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.set(full_key, 0, ex=window_seconds, nx=True)
            pipe.incr(full_key)
            pipe.ttl(full_key)
            _, count, ttl = await pipe.execute()
        if ttl is None or ttl < 0:
            await self._redis.expire(full_key, window_seconds)
            ttl = window_seconds
        return WindowHit(count=int(count), reset_in=max(1, int(ttl)))


# ── Limiter ────────────────────────────────────────────────────────────

class RateLimiter:
    def __init__(self, policy: RateLimitPolicy, store=None, fallback: MemoryWindowStore | None = None):
        self.policy = policy
        self.store = store
        self.fallback = fallback or MemoryWindowStore()
        self._degraded = False

    @classmethod
    def from_settings(cls, settings) -> "RateLimiter":
        client = aioredis.from_url(settings.REDIS_URL)
        return cls(RateLimitPolicy.from_settings(settings), store=RedisWindowStore(client))

    async def check(self, identity: str, path: str, authenticated: bool = False) -> Decision:
        bucket, cap = self.policy.classify(path)
        limit = self.policy.limit_for(cap, authenticated)
        key = f"{bucket}:{identity}"
        hit = await self._hit(key)
        return Decision(
            allowed=hit.count <= limit,
            bucket=bucket,
            limit=limit,
            remaining=max(0, limit - hit.count),
            reset_in=hit.reset_in,
        )

    async def _hit(self, key: str) -> WindowHit:
        window = self.policy.window_seconds
        if self.store is not None:
            try:
                hit = await self.store.hit(key, window)
                if self._degraded:
                    logger.info("Rate limit store recovered")
                    self._degraded = False
                return hit
            except (redis.RedisError, OSError) as exc:
                if not self._degraded:
                    logger.warning("Rate limit store unavailable, using local counters: %s", exc)
                    self._degraded = True
        return await self.fallback.hit(key, window)


def client_identity(request: Request) -> tuple[str, bool]:
    """``(identity, authenticated)`` for a request.

    Anonymous callers are keyed on the socket address. Behind a proxy, run
    uvicorn with ``--proxy-headers`` and ``--forwarded-allow-ips`` so that
    ``request.client`` already holds the real client address.
    """
    user_id = user_id_from_header(request.headers.get("authorization"))
    if user_id:
        return f"user:{user_id}", True
    host = request.client.host if request.client else "unknown"
    return f"ip:{host}", False


def install_rate_limiter(app: FastAPI) -> None:
    """Register the rate-limit middleware; the limiter is read from app state."""

    @app.middleware("http")
    async def rate_limit(request: Request, call_next):
        services = getattr(request.app.state, "services", None)
        limiter: RateLimiter | None = getattr(services, "rate_limiter", None)
        if limiter is None or request.url.path in EXEMPT_PATHS or request.method == "OPTIONS":
            return await call_next(request)

        identity, authenticated = client_identity(request)
        decision = await limiter.check(identity, request.url.path, authenticated)
        headers = {
            "X-RateLimit-Limit": str(decision.limit),
            "X-RateLimit-Remaining": str(decision.remaining),
            "X-RateLimit-Reset": str(decision.reset_in),
        }
        if not decision.allowed:
            logger.info("Rate limit hit: %s on %s bucket", identity, decision.bucket)
            headers["Retry-After"] = str(decision.reset_in)
            return JSONResponse(
                status_code=429,
                content=error_body(RATE_LIMIT_MESSAGE, 429, retryAfter=decision.reset_in),
                headers=headers,
            )

        response = await call_next(request)
        for name, value in headers.items():
            response.headers[name] = value
        return response
