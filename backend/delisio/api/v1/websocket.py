"""WebSocket endpoint for live job progress."""
from __future__ import annotations

import asyncio
import json
import logging

import redis
import redis.asyncio as aioredis
from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from fastapi.concurrency import run_in_threadpool

from delisio.services.context import ServiceContext
from delisio.services.job_queue import TERMINAL_STATUSES

router = APIRouter()
logger = logging.getLogger(__name__)


def _snapshot(services: ServiceContext, request_id: str) -> dict | None:
    state = services.queue.get_state(request_id)
    if state is None:
        return None
    return {
        "request_id": state.request_id,
        "percentage": state.progress,
        "message": state.current_message or "Processing...",
        "status": state.status,
    }


@router.websocket("/ws/jobs/{request_id}")
async def job_progress_ws(websocket: WebSocket, request_id: str):
    """Stream progress for one job.

    Sends the current state first, then forwards messages from the Redis
    channel ``job:{request_id}``. Falls back to polling the job row when
    Redis is unreachable. The socket closes after a terminal status.
    """
    await websocket.accept()
    services: ServiceContext = websocket.app.state.services

    first = await run_in_threadpool(_snapshot, services, request_id)
    if first is None:
        await websocket.send_text(json.dumps({"error": "Job not found"}))
        await websocket.close()
        return
    await websocket.send_text(json.dumps(first))
    if first["status"] in TERMINAL_STATUSES:
        await websocket.close()
        return

    try:
        if services.progress_redis_url:
            await _stream_pubsub(websocket, services, request_id)
        else:
            await _poll_db(websocket, services, request_id)
    except (redis.RedisError, OSError) as exc:
        logger.warning("Progress channel unavailable for %s, polling instead: %s", request_id[:8], exc)
        await _poll_db(websocket, services, request_id)
    except WebSocketDisconnect:
        logger.info("WebSocket disconnected for job %s", request_id[:8])
        return

    await websocket.close()


async def _stream_pubsub(websocket: WebSocket, services: ServiceContext, request_id: str) -> None:
    r = aioredis.from_url(services.progress_redis_url)
    pubsub = r.pubsub()
    channel = f"job:{request_id}"
    await pubsub.subscribe(channel)
    try:
        while True:
            message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
            if message and message["type"] == "message":
                data = message["data"]
                if isinstance(data, bytes):
                    data = data.decode("utf-8")
                await websocket.send_text(data)
                try:
                    if json.loads(data).get("status") in TERMINAL_STATUSES:
                        return
                except json.JSONDecodeError:
                    continue
            else:
                # Heartbeat; also catches a job that finished before we subscribed
                snap = await run_in_threadpool(_snapshot, services, request_id)
                if snap is None or snap["status"] in TERMINAL_STATUSES:
                    if snap:
                        await websocket.send_text(json.dumps(snap))
                    return
                await websocket.send_text(json.dumps({"heartbeat": True}))
    finally:
        await pubsub.unsubscribe(channel)
        await r.aclose()


async def _poll_db(websocket: WebSocket, services: ServiceContext, request_id: str, interval: float = 2.0) -> None:
    while True:
        snap = await run_in_threadpool(_snapshot, services, request_id)
        if snap is None:
            await websocket.send_text(json.dumps({"error": "Job not found"}))
            return
        await websocket.send_text(json.dumps(snap))
        if snap["status"] in TERMINAL_STATUSES:
            return
        await asyncio.sleep(interval)
