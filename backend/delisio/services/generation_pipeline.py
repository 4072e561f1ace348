"""Generation pipelines executed by the job runner, one per job kind.

Each pipeline receives the claimed job, a ``ProgressTracker`` and a
``Checkpoint``. Calling the checkpoint raises ``JobCancelled`` once the
request has been flagged in the cancellation registry; pipelines call it
before and after every external call and between stages. A call already
in flight is never interrupted, so its cost may still be incurred.

Recipe flow
-----------
1. LLM call with the recipe prompt (user preferences folded in)
2. Tolerant JSON parse and validation
3. Quality score, category and tags, similarity hash
4. Duplicate check against the global catalogue (reuse on a match)
5. Partial snapshot, then one child ``image`` job per step
6. Save the global copy and the owner's copy
"""
from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any

from delisio.errors import UpstreamFailure
from delisio.models import ChatMessage, Conversation, Recipe
from delisio.services.cancellation_registry import CancellationRegistry
from delisio.services.categorization import categorize
from delisio.services.context import ServiceContext
from delisio.services.duplicate_detection import find_duplicate, similarity_hash
from delisio.services.job_queue import JobState
from delisio.services.progress_tracker import ProgressTracker
from delisio.services.prompt_builder import build_chat_prompt, build_recipe_prompt, build_step_image_prompt
from delisio.services.quality_checker import evaluate_recipe
from delisio.services.subscription_service import AI_CHAT_REPLY, track_usage
from delisio.utils.json_utils import coerce_chat_reply, coerce_recipe, safe_parse_json, validate_recipe_schema

logger = logging.getLogger(__name__)

CHAT_FALLBACK_REPLY = (
    "I'm sorry, I had trouble putting my answer together. "
    "Could you try asking that again?"
)


class JobCancelled(Exception):
    """Raised at a checkpoint once the request has been cancelled."""


class Checkpoint:
    def __init__(self, registry: CancellationRegistry, request_id: str):
        self.registry = registry
        self.request_id = request_id

    def __call__(self, stage: str = "") -> None:
        if self.registry.is_cancelled(self.request_id):
            logger.info("Job %s cancelled (%s)", self.request_id[:8], stage or "checkpoint")
            raise JobCancelled(stage)


def recipe_to_dict(row: Recipe) -> dict[str, Any]:
    """Plain-JSON form of a stored recipe, as kept in job results."""
    return {
        "id": row.id,
        "title": row.title,
        "servings": row.servings,
        "ingredients": list(row.ingredients or []),
        "steps": [dict(s) for s in row.steps or []],
        "nutrition": row.nutrition,
        "prep_time_minutes": row.prep_time_minutes,
        "cook_time_minutes": row.cook_time_minutes,
        "total_time_minutes": row.total_time_minutes,
        "category": row.category,
        "tags": list(row.tags or []),
        "quality_score": row.quality_score,
        "thumbnail_url": row.thumbnail_url,
        "query": row.query,
        "owner_user_id": row.owner_user_id,
        "created_at": row.created_at.isoformat() if row.created_at else None,
    }


def parse_recipe(raw: str) -> dict[str, Any]:
    parsed = safe_parse_json(raw)
    if not parsed.ok:
        logger.warning("Unparseable recipe output: %s", parsed.raw_preview)
        raise UpstreamFailure("The recipe generator returned an invalid response")
    ok, violations = validate_recipe_schema(parsed.data)
    if not ok:
        logger.warning("Recipe output failed validation: %s", "; ".join(violations))
        raise UpstreamFailure("The recipe generator returned an incomplete recipe")
    return coerce_recipe(parsed.data)


# ── Recipe ─────────────────────────────────────────────────────────────

class RecipePipeline:
    def __init__(self, ctx: ServiceContext):
        self.ctx = ctx

    async def run(self, job: JobState, tracker: ProgressTracker, checkpoint: Checkpoint) -> dict[str, Any]:
        payload = job.payload
        query = payload["query"]
        settings = self.ctx.settings
        try:
            tracker.update(5, "Writing your recipe")
            prompt = build_recipe_prompt(query, payload.get("preferences"))
            raw = await self.ctx.llm.complete_json(prompt.system, prompt.user)
            checkpoint("recipe text received")

            recipe = parse_recipe(raw)
            tracker.update(30, "Checking the recipe")
            report = evaluate_recipe(recipe, settings.QUALITY_PASS_THRESHOLD)
            category, tags = categorize(recipe)
            recipe.update(
                query=query,
                category=category,
                tags=tags,
                quality_score=report.overall,
                similarity_hash=similarity_hash(recipe),
                thumbnail_url=None,
            )
            if not report.passed:
                logger.info("Recipe %r below quality threshold: %s", recipe["title"], report.reasons)

            with self.ctx.session_factory() as db:
                dup = find_duplicate(db, recipe, settings.DUPLICATE_SIMILARITY_THRESHOLD)
                existing = db.get(Recipe, dup.existing_recipe_id) if dup.is_duplicate else None
                existing_data = recipe_to_dict(existing) if existing else None

            if existing_data is not None:
                checkpoint("before save")
                return self._finish_duplicate(job, existing_data, report.overall)

            self.ctx.partial_cache.set(job.request_id, {**recipe, "progress": 40})
            tracker.update(40, "Recipe written")

            if settings.STEP_IMAGES_ENABLED and recipe["steps"]:
                await self._illustrate_steps(job, recipe, tracker, checkpoint)

            checkpoint("before save")
            tracker.update(95, "Saving your recipe")
            return self._save(job, recipe, report.overall)
        finally:
            self.ctx.partial_cache.delete(job.request_id)

    # ── Steps ──────────────────────────────────────────────────────────

    async def _illustrate_steps(
        self,
        job: JobState,
        recipe: dict[str, Any],
        tracker: ProgressTracker,
        checkpoint: Checkpoint,
    ) -> None:
        children: list[tuple[int, str]] = []
        for idx, step in enumerate(recipe["steps"]):
            try:
                handle = self.ctx.queue.enqueue(
                    "image",
                    {
                        "prompt": build_step_image_prompt(recipe["title"], step["text"], step.get("illustration")),
                        "parent_id": job.request_id,
                        "step_index": idx,
                        "tier": job.payload.get("image_tier", "free"),
                    },
                    owner_user_id=job.owner_user_id,
                    parent_id=job.request_id,
                )
            except UpstreamFailure as exc:
                logger.warning("Skipping step images for %s: %s", job.request_id[:8], exc.message)
                break
            children.append((idx, handle.request_id))

        if not children:
            return
        try:
            await self._wait_for_children(children, tracker, checkpoint)
        except JobCancelled:
            self._cancel_children(children)
            raise

        for idx, child_id in children:
            state = self.ctx.queue.get_state(child_id)
            if state and state.status == "completed" and state.result:
                recipe["steps"][idx]["image_url"] = state.result.get("image_url")
        images = [s.get("image_url") for s in recipe["steps"] if s.get("image_url")]
        recipe["thumbnail_url"] = recipe["steps"][-1].get("image_url") or (images[-1] if images else None)

    async def _wait_for_children(
        self,
        children: list[tuple[int, str]],
        tracker: ProgressTracker,
        checkpoint: Checkpoint,
    ) -> None:
        settings = self.ctx.settings
        deadline = time.monotonic() + settings.IMAGE_WAIT_TIMEOUT_SECONDS
        pending = {cid for _, cid in children}
        total = len(children)
        while pending:
            checkpoint("waiting for step images")
            for cid in list(pending):
                state = self.ctx.queue.get_state(cid)
                if state is None or state.is_terminal:
                    pending.discard(cid)
            done = total - len(pending)
            tracker.update(40 + int(55 * done / total), f"Illustrated {done} of {total} steps")
            if not pending:
                return
            if time.monotonic() >= deadline:
                logger.warning("Gave up waiting for %d step image(s)", len(pending))
                self._cancel_children([(0, cid) for cid in pending])
                return
            await asyncio.sleep(settings.IMAGE_POLL_INTERVAL_SECONDS)

    def _cancel_children(self, children: list[tuple[int, str]]) -> None:
        for _, cid in children:
            self.ctx.registry.cancel(cid)
            self.ctx.queue.cancel_queued(cid)

    # ── Persistence ────────────────────────────────────────────────────

    def _save(self, job: JobState, recipe: dict[str, Any], quality: float) -> dict[str, Any]:
        owner = job.owner_user_id
        with self.ctx.session_factory() as db:
            global_row = _store_recipe(db, recipe, None, job.request_id)
            owner_row = None
            if owner and job.payload.get("save", True):
                owner_row = _store_recipe(db, recipe, owner, job.request_id)
            db.commit()
            shown = owner_row or global_row
            return {
                "recipe": recipe_to_dict(shown),
                "global_recipe_id": global_row.id,
                "duplicate_of": None,
                "quality_score": quality,
            }

    def _finish_duplicate(self, job: JobState, existing: dict[str, Any], quality: float) -> dict[str, Any]:
        logger.info("Reusing catalogue recipe %s for %s", existing["id"][:8], job.request_id[:8])
        owner = job.owner_user_id
        shown = existing
        if owner and job.payload.get("save", True):
            with self.ctx.session_factory() as db:
                row = _store_recipe(db, existing, owner, job.request_id)
                db.commit()
                shown = recipe_to_dict(row)
        return {
            "recipe": shown,
            "global_recipe_id": existing["id"],
            "duplicate_of": existing["id"],
            "quality_score": quality,
        }


def _store_recipe(db, data: dict[str, Any], owner: str | None, request_id: str) -> Recipe:
    row = Recipe(
        owner_user_id=owner,
        request_id=request_id,
        query=data.get("query"),
        title=data["title"],
        servings=data.get("servings"),
        ingredients=list(data.get("ingredients") or []),
        steps=[dict(s) for s in data.get("steps") or []],
        nutrition=data.get("nutrition"),
        prep_time_minutes=data.get("prep_time_minutes"),
        cook_time_minutes=data.get("cook_time_minutes"),
        total_time_minutes=data.get("total_time_minutes"),
        category=data.get("category") or "other",
        tags=list(data.get("tags") or []),
        quality_score=data.get("quality_score"),
        similarity_hash=data.get("similarity_hash"),
        thumbnail_url=data.get("thumbnail_url"),
    )
    db.add(row)
    db.flush()
    return row


# ── Image ──────────────────────────────────────────────────────────────

class ImagePipeline:
    def __init__(self, ctx: ServiceContext):
        self.ctx = ctx

    async def run(self, job: JobState, tracker: ProgressTracker, checkpoint: Checkpoint) -> dict[str, Any]:
        payload = job.payload
        parent_id = payload.get("parent_id")
        idx = int(payload.get("step_index", 0))
        tracker.update(10, "Generating image")
        url = await self.ctx.images.generate_and_store(
            payload["prompt"],
            f"{parent_id or job.request_id}/step-{idx + 1}.png",
            payload.get("tier"),
        )
        checkpoint("image stored")
        if parent_id:
            self.ctx.partial_cache.set_step_image(parent_id, idx, url)
        return {"image_url": url, "step_index": idx}


# ── Chat ───────────────────────────────────────────────────────────────

class ChatPipeline:
    def __init__(self, ctx: ServiceContext):
        self.ctx = ctx

    async def run(self, job: JobState, tracker: ProgressTracker, checkpoint: Checkpoint) -> dict[str, Any]:
        payload = job.payload
        tracker.update(10, "Thinking")
        prompt = build_chat_prompt(payload["message"])
        raw = await self.ctx.llm.complete_json(prompt.system, prompt.user, history=payload.get("history"))
        checkpoint("chat reply received")

        parsed = safe_parse_json(raw)
        reply = coerce_chat_reply(parsed.data) if parsed.ok else None
        if reply is None:
            logger.warning("Unusable chat output for %s: %s", job.request_id[:8], parsed.raw_preview)
            reply = {
                "reply": CHAT_FALLBACK_REPLY,
                "suggestions": None,
                "error": "Could not parse the assistant response",
            }
        else:
            reply["error"] = None

        conversation_id = payload.get("conversation_id")
        if job.owner_user_id:
            self._persist(job.owner_user_id, conversation_id, reply)
        reply["conversation_id"] = conversation_id
        return reply

    def _persist(self, user_id: str, conversation_id: str | None, reply: dict[str, Any]) -> None:
        with self.ctx.session_factory() as db:
            if conversation_id:
                conv = db.get(Conversation, conversation_id)
                if conv is not None and conv.user_id == user_id:
                    db.add(ChatMessage(
                        conversation_id=conv.id,
                        role="assistant",
                        content=reply["reply"],
                        suggestions=reply.get("suggestions"),
                    ))
                    conv.updated_at = datetime.now(timezone.utc)
                    db.commit()
            if reply.get("error") is None:
                track_usage(db, user_id, AI_CHAT_REPLY)
