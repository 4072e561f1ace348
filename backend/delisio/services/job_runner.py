"""Worker-side execution of one job attempt.

``JobRunner.run()`` is what a Celery task calls for each delivery:

1. claim the job (``queued -> active``, or the previous attempt's row on
   a retry); anything else is skipped
2. check for cancellation, then run the pipeline for the job's kind
3. record the outcome:
     - success       -> ``completed`` with the result
     - cancellation  -> ``cancelled`` with no result (also when the
                        pipeline errors after a cancel request)
     - error         -> stays ``active`` and asks for a retry while
                        attempts remain, otherwise ``failed``

The queue drops the cancellation record whenever a job reaches a
terminal state.
"""
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Any

from delisio.errors import AppError, UpstreamFailure, ValidationError
from delisio.services.context import ServiceContext
from delisio.services.generation_pipeline import (
    ChatPipeline,
    Checkpoint,
    ImagePipeline,
    JobCancelled,
    RecipePipeline,
)
from delisio.services.progress_tracker import ProgressTracker

logger = logging.getLogger(__name__)

# Errors that a second attempt cannot fix
NON_RETRYABLE = (ValidationError,)


@dataclass
class RunOutcome:
    status: str  # completed | failed | cancelled | retry | skipped
    result: dict[str, Any] | None = None
    error: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


def friendly_error(exc: Exception) -> str:
    """Turn an exception into a message suitable for the job row."""
    if isinstance(exc, UpstreamFailure):
        code = exc.extra.get("upstreamStatus")
        if code in (401, 403):
            return "Authentication with the AI provider failed. Please contact support."
        if code == 429:
            return "The AI provider is rate limiting requests. Please try again later."
        return exc.message
    if isinstance(exc, AppError):
        return exc.message
    text = str(exc)
    if "timeout" in text.lower() or "timed out" in text.lower():
        return "The request to the AI provider timed out. Please try again."
    return f"Generation failed: {text}" if text else "Generation failed"


class JobRunner:
    def __init__(self, ctx: ServiceContext, pipelines: dict[str, Any] | None = None):
        self.ctx = ctx
        self.pipelines = pipelines or {
            "recipe": RecipePipeline(ctx),
            "chat": ChatPipeline(ctx),
            "image": ImagePipeline(ctx),
        }

    async def run(self, request_id: str, attempt: int = 0, max_retries: int = 0) -> RunOutcome:
        queue = self.ctx.queue
        job = queue.claim(request_id, attempt)
        if job is None:
            state = queue.get_state(request_id)
            logger.info(
                "Skipping job %s (attempt %d): status is %s",
                request_id[:8], attempt + 1, state.status if state else "unknown",
            )
            return RunOutcome("skipped")

        tracker = ProgressTracker(queue, request_id, self.ctx.progress_redis_url)
        checkpoint = Checkpoint(self.ctx.registry, request_id)
        pipeline = self.pipelines[job.kind]

        try:
            checkpoint("before start")
            result = await pipeline.run(job, tracker, checkpoint)
        except JobCancelled:
            queue.mark_cancelled(request_id)
            tracker.finish_cancelled()
            return RunOutcome("cancelled")
        except Exception as exc:
            if self.ctx.registry.is_cancelled(request_id):
                logger.info("Job %s errored after cancellation: %s", request_id[:8], exc)
                queue.mark_cancelled(request_id)
                tracker.finish_cancelled()
                return RunOutcome("cancelled")
            message = friendly_error(exc)
            retryable = not isinstance(exc, NON_RETRYABLE)
            if retryable and attempt < max_retries:
                logger.warning(
                    "Job %s attempt %d/%d failed, retrying: %s",
                    request_id[:8], attempt + 1, max_retries + 1, message,
                )
                queue.record_retry(request_id, message)
                return RunOutcome("retry", error=message)
            logger.exception("Job %s failed: %s", request_id[:8], message)
            queue.fail(request_id, message)
            tracker.finish_failed(message)
            return RunOutcome("failed", error=message)

        if not queue.complete(request_id, result):
            # Cancelled or failed from outside while the pipeline ran
            state = queue.get_state(request_id)
            status = state.status if state else "unknown"
            logger.info("Job %s finished but is already %s", request_id[:8], status)
            return RunOutcome(status)

        tracker.finish_completed(result)
        return RunOutcome("completed", result=result)
