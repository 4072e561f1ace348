"""Tests for the fixed-window rate limiter."""
import asyncio

import pytest
import redis

from delisio.services.rate_limiter import (
    MemoryWindowStore,
    RateLimiter,
    RateLimitPolicy,
)

from conftest import auth_headers, make_client, make_context, RecordingDispatcher


class FakeClock:
    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now


class BrokenStore:
    def __init__(self):
        self.calls = 0

    async def hit(self, key, window_seconds):
        self.calls += 1
        raise redis.ConnectionError("connection refused")


def check(limiter, identity, path, authenticated=False):
    return asyncio.run(limiter.check(identity, path, authenticated))


class TestClassify:
    @pytest.fixture
    def policy(self):
        return RateLimitPolicy()

    def test_status_before_recipes(self, policy):
        assert policy.classify("/api/v1/recipes/status/abc") == ("recipe_status", 60)

    def test_recipes(self, policy):
        assert policy.classify("/api/v1/recipes") == ("recipes", 15)
        assert policy.classify("/api/v1/recipes/cancel") == ("recipes", 15)

    def test_chat(self, policy):
        assert policy.classify("/api/v1/chat") == ("chat", 50)

    def test_default(self, policy):
        assert policy.classify("/api/v1/users/me/preferences") == ("default", 100)
        assert policy.classify("/api/v1/recipesque") == ("default", 100)

    def test_authenticated_cap_raises_limit(self, policy):
        assert policy.limit_for(15, authenticated=True) == 150
        assert policy.limit_for(15, authenticated=False) == 15


class TestFixedWindow:
    def test_sixteenth_recipe_request_rejected(self):
        limiter = RateLimiter(RateLimitPolicy())
        decisions = [check(limiter, "ip:1.2.3.4", "/api/v1/recipes") for _ in range(16)]
        assert all(d.allowed for d in decisions[:15])
        assert decisions[14].remaining == 0
        assert decisions[15].allowed is False
        assert 0 < decisions[15].reset_in <= 900

    def test_buckets_are_independent(self):
        limiter = RateLimiter(RateLimitPolicy(recipes=1))
        assert check(limiter, "ip:a", "/api/v1/recipes").allowed
        assert not check(limiter, "ip:a", "/api/v1/recipes").allowed
        assert check(limiter, "ip:a", "/api/v1/chat").allowed
        assert check(limiter, "ip:b", "/api/v1/recipes").allowed

    def test_authenticated_identity_gets_higher_cap(self):
        limiter = RateLimiter(RateLimitPolicy())
        decisions = [check(limiter, "user:u1", "/api/v1/recipes", True) for _ in range(20)]
        assert all(d.allowed for d in decisions)
        assert decisions[-1].limit == 150

    def test_window_resets(self):
        clock = FakeClock()
        limiter = RateLimiter(RateLimitPolicy(recipes=1, window_seconds=60),
                              fallback=MemoryWindowStore(clock=clock))
        assert check(limiter, "ip:a", "/api/v1/recipes").allowed
        assert not check(limiter, "ip:a", "/api/v1/recipes").allowed
        clock.now += 60
        assert check(limiter, "ip:a", "/api/v1/recipes").allowed


class TestStoreFallback:
    def test_redis_failure_falls_back_to_local_counters(self):
        store = BrokenStore()
        limiter = RateLimiter(RateLimitPolicy(recipes=2), store=store)
        results = [check(limiter, "ip:a", "/api/v1/recipes").allowed for _ in range(3)]
        assert results == [True, True, False]
        assert store.calls == 3


class TestMiddleware:
    @pytest.fixture
    def limited_client(self, session_factory):
        ctx = make_context(session_factory, RecordingDispatcher(), rate_limiter=RateLimiter(RateLimitPolicy()))
        return make_client(ctx)

    def test_sixteenth_submission_gets_429(self, limited_client):
        for _ in range(15):
            resp = limited_client.post("/api/v1/recipes", json={"query": "vegetarian lasagna"})
            assert resp.status_code == 202
            assert "X-RateLimit-Remaining" in resp.headers

        resp = limited_client.post("/api/v1/recipes", json={"query": "vegetarian lasagna"})
        assert resp.status_code == 429
        body = resp.json()
        assert body["error"]["status"] == 429
        assert body["error"]["retryAfter"] > 0
        assert resp.headers["Retry-After"] == str(body["error"]["retryAfter"])

    def test_forwarded_for_header_does_not_change_identity(self, limited_client):
        codes = [
            limited_client.post(
                "/api/v1/recipes",
                json={"query": "vegetarian lasagna"},
                headers={"X-Forwarded-For": f"10.0.0.{i}"},
            ).status_code
            for i in range(16)
        ]
        assert codes[:15] == [202] * 15
        assert codes[15] == 429

    def test_health_is_exempt(self, session_factory):
        ctx = make_context(
            session_factory, RecordingDispatcher(),
            rate_limiter=RateLimiter(RateLimitPolicy(default=1)),
        )
        client = make_client(ctx)
        for _ in range(3):
            assert client.get("/health").status_code == 200

    def test_token_holder_counted_separately(self, session_factory):
        ctx = make_context(
            session_factory, RecordingDispatcher(),
            rate_limiter=RateLimiter(RateLimitPolicy(default=1, authenticated=2)),
        )
        client = make_client(ctx)
        assert client.get("/api/v1/recipes/categories").status_code == 200
        assert client.get("/api/v1/recipes/categories").status_code == 200  # recipes bucket
        assert client.get("/api/v1/users/me/preferences").status_code == 401
        assert client.get("/api/v1/users/me/preferences").status_code == 429
        headers = auth_headers("rate-user")
        assert client.get("/api/v1/users/me/preferences", headers=headers).status_code == 200
        assert client.get("/api/v1/users/me/preferences", headers=headers).status_code == 200
        assert client.get("/api/v1/users/me/preferences", headers=headers).status_code == 429
