"""Tests for the Celery task wrapper around JobRunner."""
from types import SimpleNamespace

import pytest

from delisio.services.job_runner import RunOutcome
from delisio.tasks import generation


class Retry(Exception):
    pass


class FakeTask:
    def __init__(self, retries=0):
        self.request = SimpleNamespace(retries=retries)
        self.retry_calls = []

    def retry(self, countdown, max_retries):
        self.retry_calls.append((countdown, max_retries))
        return Retry()


@pytest.fixture
def outcomes(monkeypatch):
    calls = []
    queue = []

    def fake_attempt(request_id, attempt, max_retries):
        calls.append((request_id, attempt, max_retries))
        return queue.pop(0)

    monkeypatch.setattr(generation, "_run_attempt", fake_attempt)
    return SimpleNamespace(calls=calls, queue=queue)


class TestExecute:
    def test_completed_outcome_is_returned(self, outcomes):
        outcomes.queue.append(RunOutcome("completed", result={"reply": "hi"}))
        result = generation._execute(FakeTask(), "req-1", 2, 2.0)
        assert result == {"status": "completed", "result": {"reply": "hi"}, "error": None}
        assert outcomes.calls == [("req-1", 0, 2)]

    def test_retry_uses_exponential_backoff(self, outcomes):
        outcomes.queue.append(RunOutcome("retry", error="timeout"))
        task = FakeTask(retries=2)
        with pytest.raises(Retry):
            generation._execute(task, "req-1", 3, 3.0)
        assert task.retry_calls == [(12.0, 3)]
        assert outcomes.calls == [("req-1", 2, 3)]

    def test_failed_and_cancelled_are_not_retried(self, outcomes):
        outcomes.queue.extend([RunOutcome("failed", error="boom"), RunOutcome("cancelled")])
        task = FakeTask()
        assert generation._execute(task, "req-1", 2, 2.0)["status"] == "failed"
        assert generation._execute(task, "req-1", 2, 2.0)["status"] == "cancelled"
        assert task.retry_calls == []


class TestRunAttempt:
    def test_runs_job_on_a_fresh_loop(self, monkeypatch, ctx):
        monkeypatch.setattr(generation, "get_worker_context", lambda: ctx)
        request_id = ctx.queue.enqueue("chat", {"message": "hi", "history": []}).request_id

        outcome = generation._run_attempt(request_id, 0, 0)
        assert outcome.status == "completed"
        assert ctx.queue.get_state(request_id).status == "completed"
