"""Pooled httpx clients for the external platforms the workers call.

One ``AsyncClient`` per platform (``openai`` for chat/image generation,
``storage`` for image downloads and uploads). Clients are recreated when
the running event loop changes, which happens for every Celery task since
each task drives its coroutine on a fresh loop.
"""
from __future__ import annotations

import asyncio
import logging

import httpx

logger = logging.getLogger(__name__)

# ── Per-platform timeouts ──────────────────────────────────────────────

_TIMEOUTS: dict[str, httpx.Timeout] = {
    "openai": httpx.Timeout(120.0, connect=15.0),
    "images": httpx.Timeout(180.0, connect=15.0),
    "storage": httpx.Timeout(60.0, connect=10.0),
}

_DEFAULT_TIMEOUT = httpx.Timeout(60.0, connect=10.0)

_CONNECTION_LIMITS = httpx.Limits(
    max_connections=20,
    max_keepalive_connections=10,
    keepalive_expiry=120,
)

_clients: dict[str, httpx.AsyncClient] = {}
_client_loop_ids: dict[str, int] = {}


def get_http_client(platform: str) -> httpx.AsyncClient:
    """Get or create the pooled client for *platform* on the current loop."""
    loop_id = id(asyncio.get_running_loop())

    if (
        platform not in _clients
        or _clients[platform].is_closed
        or _client_loop_ids.get(platform) != loop_id
    ):
        _clients[platform] = httpx.AsyncClient(
            timeout=_TIMEOUTS.get(platform, _DEFAULT_TIMEOUT),
            limits=_CONNECTION_LIMITS,
        )
        _client_loop_ids[platform] = loop_id
        logger.debug("Created new HTTP client for '%s'", platform)

    return _clients[platform]


async def close_all_clients() -> None:
    """Close every pooled client that belongs to the running loop."""
    loop_id = id(asyncio.get_running_loop())
    for name, client in list(_clients.items()):
        if not client.is_closed and _client_loop_ids.get(name) == loop_id:
            try:
                await client.aclose()
            except httpx.HTTPError as exc:
                logger.debug("Error closing client '%s': %s", name, exc)
    _clients.clear()
    _client_loop_ids.clear()
    logger.info("All HTTP clients closed")
