"""Shared Redis client.

Redis holds the rate-limit windows and the lap-capture flag. Both have a
fallback when Redis is missing, so request handlers take the client through
``get_optional_redis`` and treat ``None`` as "not configured".
"""

from __future__ import annotations

import logging

import redis.asyncio as redis

logger = logging.getLogger(__name__)

_client: redis.Redis | None = None


async def init_redis(url: str, max_connections: int = 20) -> None:
    """Create the pool. Connections are opened lazily on first command."""
    global _client  # noqa: PLW0603
    _client = redis.from_url(  # type: ignore[no-untyped-call]
        url,
        decode_responses=True,
        max_connections=max_connections,
    )
    logger.info("Redis pool ready (max_connections=%d)", max_connections)


async def close_redis() -> None:
    global _client  # noqa: PLW0603
    if _client is not None:
        await _client.aclose()
        _client = None


def get_redis() -> redis.Redis:
    """The shared client. Raises RuntimeError before ``init_redis``."""
    if _client is None:
        raise RuntimeError("Redis is not initialized")
    return _client


def get_optional_redis() -> redis.Redis | None:
    """FastAPI dependency: the shared client, or None when Redis is not set up."""
    return _client
