"""Test configuration and fixtures."""
import asyncio
import json
import time

import jwt
import pytest
import redis
from fastapi.testclient import TestClient

from delisio.config import Settings, get_settings
from delisio.database import build_engine, build_session_factory, create_tables
from delisio.services.cancellation_registry import CancellationRegistry, MemoryCancellationStore
from delisio.services.context import ServiceContext
from delisio.services.job_queue import JobQueue
from delisio.services.job_runner import JobRunner
from delisio.services.partial_recipe_cache import PartialRecipeCache
from delisio.services.rate_limiter import RateLimiter, RateLimitPolicy


LASAGNA = {
    "title": "Vegetarian Lasagna",
    "servings": 6,
    "ingredients": [
        "12 lasagna noodles",
        "2 cups ricotta cheese",
        "3 cups marinara sauce",
        "2 cups chopped spinach",
        "1 cup shredded mozzarella",
    ],
    "steps": [
        {"text": "Boil the lasagna noodles in salted water until al dente.", "illustration": "Noodles boiling"},
        {"text": "Mix the ricotta cheese with the chopped spinach in a bowl.", "illustration": "Mixing filling"},
        {"text": "Layer noodles, marinara sauce and the ricotta mixture in a dish.", "illustration": "Layering"},
        {"text": "Top with mozzarella and bake for 40 minutes until bubbling.", "illustration": "Golden lasagna"},
    ],
    "nutrition": {"calories": 420, "protein": "22g", "fat": "16g", "carbs": "48g"},
    "prepTime": 25,
    "cookTime": 40,
    "totalTime": 65,
}

CHAT_REPLY = {
    "reply": "Lasagna is a great choice! Want a vegetarian or a classic beef version?",
    "suggestions": None,
}


class FakeLLM:
    """Returns canned JSON; recipe and chat replies are told apart by the system prompt."""

    def __init__(self, recipe=None, chat=None):
        self.recipe = [json.dumps(LASAGNA)] if recipe is None else list(recipe)
        self.chat = [json.dumps(CHAT_REPLY)] if chat is None else list(chat)
        self.calls = []

    async def complete_json(self, system_prompt, user_prompt, history=None, temperature=None):
        kind = "chat" if "cooking assistant" in system_prompt else "recipe"
        self.calls.append({"kind": kind, "user": user_prompt, "history": history})
        replies = self.chat if kind == "chat" else self.recipe
        reply = replies.pop(0) if len(replies) > 1 else replies[0]
        if isinstance(reply, Exception):
            raise reply
        return reply


class FakeImages:
    def __init__(self):
        self.prompts = []

    async def generate_and_store(self, prompt, object_name, tier=None):
        self.prompts.append((prompt, object_name, tier))
        return f"https://img.test/{object_name}"


class UnreachableStore:
    """Cancellation store whose every call fails like a Redis outage."""

    def _down(self, *args, **kwargs):
        raise redis.ConnectionError("connection refused")

    get = put = delete = records = _down


class RecordingDispatcher:
    """Accepts jobs without running them."""

    def __init__(self, fail=False):
        self.fail = fail
        self.dispatched = []
        self.revoked = []

    def dispatch(self, kind, request_id):
        if self.fail:
            raise ConnectionError("broker down")
        self.dispatched.append((kind, request_id))
        return f"task-{request_id}"

    def revoke(self, task_id):
        self.revoked.append(task_id)

    def ping(self):
        return not self.fail


class InlineDispatcher(RecordingDispatcher):
    """Runs every job in-process as soon as it is dispatched."""

    def __init__(self):
        super().__init__()
        self.ctx = None
        self.tasks = []

    def dispatch(self, kind, request_id):
        task_id = super().dispatch(kind, request_id)
        runner = JobRunner(self.ctx)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            asyncio.run(runner.run(request_id))
        else:
            self.tasks.append(loop.create_task(runner.run(request_id)))
        return task_id


@pytest.fixture
def session_factory():
    engine = build_engine("sqlite:///:memory:")
    create_tables(engine)
    yield build_session_factory(engine)
    engine.dispose()


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


def make_context(session_factory, dispatcher, llm=None, images=None, rate_limiter=None, **overrides):
    values = {
        "ENVIRONMENT": "test",
        "CANCELLATION_BACKEND": "memory",
        "STEP_IMAGES_ENABLED": False,
        "CHAT_POLL_INTERVAL_SECONDS": 0.01,
        "IMAGE_POLL_INTERVAL_SECONDS": 0.01,
    }
    values.update(overrides)
    settings = Settings(**values)
    registry = CancellationRegistry(MemoryCancellationStore())
    ctx = ServiceContext(
        settings=settings,
        session_factory=session_factory,
        registry=registry,
        queue=JobQueue(session_factory, registry, dispatcher),
        partial_cache=PartialRecipeCache(None, settings.PARTIAL_RECIPE_TTL_SECONDS),
        llm=llm or FakeLLM(),
        images=images or FakeImages(),
        rate_limiter=rate_limiter,
    )
    if isinstance(dispatcher, InlineDispatcher):
        dispatcher.ctx = ctx
    return ctx


@pytest.fixture
def recording_dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def ctx(session_factory, recording_dispatcher):
    """Services whose jobs stay queued until a test runs them."""
    return make_context(session_factory, recording_dispatcher)


@pytest.fixture
def inline_ctx(session_factory):
    """Services whose jobs run to completion on dispatch."""
    return make_context(session_factory, InlineDispatcher())


def make_client(ctx, raise_server_exceptions=True):
    from delisio.main import create_app
    return TestClient(create_app(ctx), raise_server_exceptions=raise_server_exceptions)


@pytest.fixture
def client(ctx):
    return make_client(ctx)


@pytest.fixture
def inline_client(inline_ctx):
    return make_client(inline_ctx)


def memory_limiter(**caps):
    return RateLimiter(RateLimitPolicy(**caps))


def make_token(user_id="user-1", role=None, expires_in=3600):
    settings = get_settings()
    claims = {
        "sub": user_id,
        "aud": settings.SUPABASE_JWT_AUDIENCE,
        "email": f"{user_id}@example.com",
        "exp": int(time.time()) + expires_in,
    }
    if role:
        claims["app_metadata"] = {"role": role}
    return jwt.encode(claims, settings.SUPABASE_JWT_SECRET, algorithm="HS256")


def auth_headers(user_id="user-1", role=None):
    return {"Authorization": f"Bearer {make_token(user_id, role)}"}
