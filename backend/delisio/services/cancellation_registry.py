"""Cancellation registry — per-request cancellation flags for generation jobs.

The API registers every request id it enqueues; a cancel call flips the
flag; workers poll ``is_cancelled()`` at their checkpoints and stop
cooperatively. Unknown ids always read as "not cancelled" so a missing or
already-cleaned record never breaks a running job.

Two stores are provided:

  - ``MemoryCancellationStore``: a dict guarded by a lock, for a single
    process (tests, local development).
  - ``RedisCancellationStore``: one hash per request id with a TTL, so the
    API process and the Celery workers see the same flags.

Records not touched for ``retention_seconds`` are dropped by ``sweep()``,
which ``run_periodic_sweep()`` calls on a fixed interval.
"""
from __future__ import annotations

import asyncio
import logging
import threading
import time
from dataclasses import dataclass
from typing import Protocol

import redis

logger = logging.getLogger(__name__)

KEY_PREFIX = "cancel:"


@dataclass
class CancellationRecord:
    request_id: str
    cancelled: bool
    last_touched_at: float


class CancellationStore(Protocol):
    def put(self, record: CancellationRecord, retention_seconds: int) -> None: ...
    def get(self, request_id: str) -> CancellationRecord | None: ...
    def delete(self, request_id: str) -> bool: ...
    def records(self) -> list[CancellationRecord]: ...


# ── Stores ─────────────────────────────────────────────────────────────

class MemoryCancellationStore:
    """Process-local store."""

    def __init__(self):
        self._records: dict[str, CancellationRecord] = {}
        self._lock = threading.Lock()

    def put(self, record: CancellationRecord, retention_seconds: int) -> None:
        with self._lock:
            self._records[record.request_id] = record

    def get(self, request_id: str) -> CancellationRecord | None:
        with self._lock:
            rec = self._records.get(request_id)
            return None if rec is None else CancellationRecord(**rec.__dict__)

    def delete(self, request_id: str) -> bool:
        with self._lock:
            return self._records.pop(request_id, None) is not None

    def records(self) -> list[CancellationRecord]:
        with self._lock:
            return [CancellationRecord(**r.__dict__) for r in self._records.values()]


class RedisCancellationStore:
    """Shared store: ``cancel:{request_id}`` hashes with an expiry."""

    def __init__(self, client: redis.Redis):
        self._redis = client

    def put(self, record: CancellationRecord, retention_seconds: int) -> None:
        key = KEY_PREFIX + record.request_id
        pipe = self._redis.pipeline(transaction=True)
        pipe.hset(key, mapping={
            "cancelled": "1" if record.cancelled else "0",
            "touched_at": repr(record.last_touched_at),
        })
        # Redis expiry is a backstop; sweep() applies the same retention
        pipe.expire(key, max(1, int(retention_seconds)) * 2)
        pipe.execute()

    def get(self, request_id: str) -> CancellationRecord | None:
        raw = self._redis.hgetall(KEY_PREFIX + request_id)
        if not raw:
            return None
        return _decode_record(request_id, raw)

    def delete(self, request_id: str) -> bool:
        return bool(self._redis.delete(KEY_PREFIX + request_id))

    def records(self) -> list[CancellationRecord]:
        out: list[CancellationRecord] = []
        for key in self._redis.scan_iter(match=KEY_PREFIX + "*", count=500):
            if isinstance(key, bytes):
                key = key.decode("utf-8")
            raw = self._redis.hgetall(key)
            if raw:
                out.append(_decode_record(key[len(KEY_PREFIX):], raw))
        return out


def _decode_record(request_id: str, raw: dict) -> CancellationRecord:
    data = {
        (k.decode("utf-8") if isinstance(k, bytes) else k): (v.decode("utf-8") if isinstance(v, bytes) else v)
        for k, v in raw.items()
    }
    return CancellationRecord(
        request_id=request_id,
        cancelled=data.get("cancelled") == "1",
        last_touched_at=float(data.get("touched_at") or 0.0),
    )


# ── Registry ───────────────────────────────────────────────────────────

class CancellationRegistry:
    """Lifecycle-scoped registry of cancellation flags.

    Constructed once per process (FastAPI lifespan / Celery worker) and
    passed to whatever needs it; nothing here is a module global.
    """

    def __init__(
        self,
        store: CancellationStore | None = None,
        retention_seconds: int = 900,
        clock=time.time,
    ):
        self.store = store if store is not None else MemoryCancellationStore()
        self.retention_seconds = retention_seconds
        self._clock = clock

    def register(self, request_id: str) -> str:
        """Create (or refresh) an uncancelled record for *request_id*."""
        self.store.put(
            CancellationRecord(request_id, False, self._clock()),
            self.retention_seconds,
        )
        return request_id

    def is_cancelled(self, request_id: str) -> bool:
        """True only when a record exists and is flagged."""
        try:
            rec = self.store.get(request_id)
        except redis.RedisError as exc:
            logger.warning("Cancellation lookup failed for %s: %s", request_id[:8], exc)
            return False
        return rec is not None and rec.cancelled

    def cancel(self, request_id: str) -> bool:
        """Flag *request_id*. Returns False when no record exists."""
        rec = self.store.get(request_id)
        if rec is None:
            return False
        rec.cancelled = True
        rec.last_touched_at = self._clock()
        self.store.put(rec, self.retention_seconds)
        logger.info("Request %s flagged for cancellation", request_id[:8])
        return True

    def cleanup(self, request_id: str) -> None:
        try:
            self.store.delete(request_id)
        except redis.RedisError as exc:
            # The record expires on its own; sweep() catches the rest
            logger.warning("Cancellation cleanup failed for %s: %s", request_id[:8], exc)

    def sweep(self, now: float | None = None) -> int:
        """Drop records untouched for longer than the retention window."""
        now = self._clock() if now is None else now
        cutoff = now - self.retention_seconds
        removed = 0
        for rec in self.store.records():
            if rec.last_touched_at < cutoff and self.store.delete(rec.request_id):
                removed += 1
        if removed:
            logger.info("Swept %d stale cancellation record(s)", removed)
        return removed


def build_registry(settings) -> CancellationRegistry:
    """Build the registry configured by ``CANCELLATION_BACKEND``."""
    if settings.CANCELLATION_BACKEND == "redis":
        store: CancellationStore = RedisCancellationStore(redis.from_url(settings.REDIS_URL))
    else:
        store = MemoryCancellationStore()
    return CancellationRegistry(store, retention_seconds=settings.CANCELLATION_RETENTION_SECONDS)


async def run_periodic_sweep(registry: CancellationRegistry, interval_seconds: float) -> None:
    """Sweep the registry every *interval_seconds* until cancelled."""
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await asyncio.to_thread(registry.sweep)
        except redis.RedisError as exc:
            logger.warning("Cancellation sweep failed: %s", exc)
