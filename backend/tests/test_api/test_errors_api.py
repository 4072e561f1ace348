"""Tests for the JSON error envelope and health endpoint."""
import pytest
from fastapi.testclient import TestClient

from delisio.config import Settings
from delisio.errors import RateLimitedError
from delisio.main import create_app

from conftest import auth_headers, make_token


@pytest.fixture
def app(ctx):
    app = create_app(ctx)

    @app.get("/boom")
    def boom():
        raise RuntimeError("kaboom")

    @app.get("/slow-down")
    def slow_down():
        raise RateLimitedError(retry_after=42)

    return app


class TestEnvelope:
    def test_unhandled_error_includes_stack_outside_production(self, app):
        resp = TestClient(app, raise_server_exceptions=False).get("/boom")
        assert resp.status_code == 500
        error = resp.json()["error"]
        assert error["message"] == "Internal server error"
        assert error["type"] == "RuntimeError"
        assert "kaboom" in error["stack"]

    def test_production_hides_stack(self, app, monkeypatch):
        monkeypatch.setattr("delisio.errors.get_settings", lambda: Settings(ENVIRONMENT="production"))
        error = TestClient(app, raise_server_exceptions=False).get("/boom").json()["error"]
        assert error == {"message": "Internal server error", "status": 500}

    def test_rate_limited_error_sets_retry_after(self, app):
        resp = TestClient(app).get("/slow-down")
        assert resp.status_code == 429
        assert resp.headers["Retry-After"] == "42"
        assert resp.json()["error"]["retryAfter"] == 42

    def test_unknown_route(self, client):
        resp = client.get("/api/v1/nowhere")
        assert resp.status_code == 404
        assert resp.json()["error"]["status"] == 404


class TestAuth:
    def test_missing_token(self, client):
        resp = client.get("/api/v1/subscriptions/me")
        assert resp.status_code == 401
        assert resp.json()["error"]["message"] == "Authentication required"

    def test_expired_token(self, client):
        headers = {"Authorization": f"Bearer {make_token(expires_in=-60)}"}
        resp = client.get("/api/v1/subscriptions/me", headers=headers)
        assert resp.status_code == 401
        assert resp.json()["error"]["message"] == "Token has expired"

    def test_garbage_token(self, client):
        resp = client.get("/api/v1/subscriptions/me", headers={"Authorization": "Bearer nope"})
        assert resp.json()["error"]["message"] == "Invalid token"

    def test_admin_only(self, client):
        resp = client.get("/api/v1/admin/dashboard", headers=auth_headers("plain-user"))
        assert resp.status_code == 403


class TestHealth:
    def test_health(self, client):
        body = client.get("/health").json()
        assert body["status"] == "healthy"
        assert body["version"]
