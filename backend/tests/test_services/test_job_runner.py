"""Tests for the worker-side job runner and generation pipelines."""
import asyncio
import json

import pytest

from delisio.errors import UpstreamFailure
from delisio.models import Recipe
from delisio.services.generation_pipeline import CHAT_FALLBACK_REPLY
from delisio.services.job_runner import JobRunner, friendly_error

from conftest import LASAGNA, FakeLLM, InlineDispatcher, RecordingDispatcher, make_context


def run_job(ctx, request_id, attempt=0, max_retries=0):
    return asyncio.run(JobRunner(ctx).run(request_id, attempt=attempt, max_retries=max_retries))


class CancellingLLM(FakeLLM):
    """Flags the job for cancellation while the model call is in flight."""

    def __init__(self, registry, request_id):
        super().__init__()
        self.registry = registry
        self.request_id = request_id

    async def complete_json(self, *args, **kwargs):
        self.registry.cancel(self.request_id)
        return await super().complete_json(*args, **kwargs)


class TestRecipeJobs:
    def test_completes_with_recipe(self, ctx, db_session):
        rid = ctx.queue.enqueue("recipe", {"query": "vegetarian lasagna"}).request_id
        outcome = run_job(ctx, rid)

        assert outcome.status == "completed"
        state = ctx.queue.get_state(rid)
        assert state.status == "completed"
        recipe = state.result["recipe"]
        assert recipe["title"] == "Vegetarian Lasagna"
        assert recipe["category"] == "vegetarian"
        assert recipe["quality_score"] == 10.0
        assert state.result["duplicate_of"] is None
        assert db_session.query(Recipe).filter(Recipe.owner_user_id.is_(None)).count() == 1

    def test_owner_gets_personal_copy(self, ctx, db_session):
        rid = ctx.queue.enqueue("recipe", {"query": "lasagna"}, owner_user_id="u1").request_id
        run_job(ctx, rid)
        result = ctx.queue.get_state(rid).result
        assert result["recipe"]["owner_user_id"] == "u1"
        assert result["global_recipe_id"] != result["recipe"]["id"]
        assert db_session.query(Recipe).count() == 2

    def test_regeneration_reuses_catalogue_recipe(self, ctx, db_session):
        first = ctx.queue.enqueue("recipe", {"query": "lasagna"}).request_id
        run_job(ctx, first)
        second = ctx.queue.enqueue("recipe", {"query": "lasagna again"}).request_id
        run_job(ctx, second)

        original = ctx.queue.get_state(first).result["recipe"]["id"]
        assert ctx.queue.get_state(second).result["duplicate_of"] == original
        assert db_session.query(Recipe).count() == 1

    def test_cancel_before_pickup_never_completes(self, ctx):
        rid = ctx.queue.enqueue("recipe", {"query": "lasagna"}).request_id
        assert ctx.queue.request_cancel(rid) == "cancelled"

        outcome = run_job(ctx, rid)
        assert outcome.status == "skipped"
        state = ctx.queue.get_state(rid)
        assert state.status == "cancelled"
        assert state.result is None

    def test_flag_set_before_claim_is_honoured(self, ctx):
        rid = ctx.queue.enqueue("recipe", {"query": "lasagna"}).request_id
        ctx.registry.cancel(rid)  # flag only; the row stays queued
        assert run_job(ctx, rid).status == "cancelled"
        assert ctx.queue.get_state(rid).status == "cancelled"
        assert ctx.llm.calls == []

    def test_cancel_during_model_call(self, session_factory):
        ctx = make_context(session_factory, RecordingDispatcher())
        rid = ctx.queue.enqueue("recipe", {"query": "lasagna"}).request_id
        ctx.llm = CancellingLLM(ctx.registry, rid)

        assert run_job(ctx, rid).status == "cancelled"
        state = ctx.queue.get_state(rid)
        assert state.status == "cancelled"
        assert state.result is None
        with session_factory() as db:
            assert db.query(Recipe).count() == 0

    def test_invalid_model_output_fails(self, session_factory):
        ctx = make_context(session_factory, RecordingDispatcher(), llm=FakeLLM(recipe=['{"title": ""}']))
        rid = ctx.queue.enqueue("recipe", {"query": "lasagna"}).request_id
        outcome = run_job(ctx, rid)
        assert outcome.status == "failed"
        assert "incomplete recipe" in ctx.queue.get_state(rid).error

    def test_step_images_fill_recipe(self, session_factory):
        ctx = make_context(session_factory, InlineDispatcher(), STEP_IMAGES_ENABLED=True)
        rid = ctx.queue.enqueue("recipe", {"query": "lasagna", "image_tier": "premium"}).request_id

        state = ctx.queue.get_state(rid)
        assert state.status == "completed"
        steps = state.result["recipe"]["steps"]
        assert [s["image_url"] for s in steps] == [
            f"https://img.test/{rid}/step-{i}.png" for i in range(1, len(LASAGNA["steps"]) + 1)
        ]
        assert state.result["recipe"]["thumbnail_url"] == steps[-1]["image_url"]
        children = ctx.queue.children(rid)
        assert len(children) == len(LASAGNA["steps"])
        assert all(c.status == "completed" for c in children)
        assert {tier for _, _, tier in ctx.images.prompts} == {"premium"}
        assert ctx.partial_cache.get(rid) is None


class TestChatJobs:
    def test_reply(self, ctx):
        rid = ctx.queue.enqueue("chat", {"message": "I want lasagna", "history": []}).request_id
        assert run_job(ctx, rid).status == "completed"
        result = ctx.queue.get_state(rid).result
        assert result["reply"].startswith("Lasagna is a great choice")
        assert result["error"] is None

    def test_history_is_forwarded(self, ctx):
        history = [{"role": "user", "content": "hi"}, {"role": "assistant", "content": "hello"}]
        rid = ctx.queue.enqueue("chat", {"message": "ideas?", "history": history}).request_id
        run_job(ctx, rid)
        assert ctx.llm.calls[-1]["history"] == history

    def test_unparseable_reply_uses_fallback(self, session_factory):
        ctx = make_context(session_factory, RecordingDispatcher(), llm=FakeLLM(chat=["not json at all"]))
        rid = ctx.queue.enqueue("chat", {"message": "hi"}).request_id
        assert run_job(ctx, rid).status == "completed"
        result = ctx.queue.get_state(rid).result
        assert result["reply"] == CHAT_FALLBACK_REPLY
        assert result["error"]

    def test_retry_then_success(self, session_factory):
        llm = FakeLLM(chat=[UpstreamFailure("LLM request failed with HTTP 500"), json.dumps({"reply": "ok"})])
        ctx = make_context(session_factory, RecordingDispatcher(), llm=llm)
        rid = ctx.queue.enqueue("chat", {"message": "hi"}).request_id

        first = run_job(ctx, rid, attempt=0, max_retries=2)
        assert first.status == "retry"
        assert ctx.queue.get_state(rid).status == "active"

        second = run_job(ctx, rid, attempt=1, max_retries=2)
        assert second.status == "completed"
        state = ctx.queue.get_state(rid)
        assert state.result["reply"] == "ok"
        assert state.attempts == 2

    def test_failure_after_retries_exhausted(self, session_factory):
        llm = FakeLLM(chat=[UpstreamFailure("boom", upstreamStatus=429)])
        ctx = make_context(session_factory, RecordingDispatcher(), llm=llm)
        rid = ctx.queue.enqueue("chat", {"message": "hi"}).request_id
        assert run_job(ctx, rid, attempt=0, max_retries=1).status == "retry"
        outcome = run_job(ctx, rid, attempt=1, max_retries=1)
        assert outcome.status == "failed"
        state = ctx.queue.get_state(rid)
        assert state.status == "failed"
        assert "rate limiting" in state.error

    def test_error_after_cancel_ends_cancelled(self, session_factory):
        llm = FakeLLM(chat=[UpstreamFailure("boom")])
        ctx = make_context(session_factory, RecordingDispatcher(), llm=llm)
        rid = ctx.queue.enqueue("chat", {"message": "hi"}).request_id

        async def cancel_then_fail(*args, **kwargs):
            ctx.registry.cancel(rid)
            raise UpstreamFailure("boom")

        llm.complete_json = cancel_then_fail
        assert run_job(ctx, rid, max_retries=3).status == "cancelled"
        assert ctx.queue.get_state(rid).status == "cancelled"


class TestFriendlyError:
    @pytest.mark.parametrize("status,fragment", [
        (401, "Authentication"),
        (403, "Authentication"),
        (429, "rate limiting"),
    ])
    def test_upstream_status(self, status, fragment):
        assert fragment in friendly_error(UpstreamFailure("x", upstreamStatus=status))

    def test_timeout(self):
        assert "timed out" in friendly_error(RuntimeError("Read timed out"))

    def test_plain(self):
        assert friendly_error(RuntimeError("kaboom")) == "Generation failed: kaboom"
