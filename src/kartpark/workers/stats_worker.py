"""Statistics arq worker: session folding and stale recomputation."""

from __future__ import annotations

import logging

import redis.asyncio as aioredis

from kartpark.config import get_settings
from kartpark.database import close_db, init_db, session_scope
from kartpark.stats import service as stats_service

logger = logging.getLogger(__name__)


async def stats_startup(ctx: dict) -> None:  # type: ignore[type-arg]
    """Initialize Redis + DB connections on worker startup."""
    settings = get_settings()
    await init_db(settings.database_url)
    ctx["redis"] = aioredis.from_url(
        settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
        max_connections=10,
    )
    logger.info("Statistics worker started")


async def stats_shutdown(ctx: dict) -> None:  # type: ignore[type-arg]
    """Clean up on worker shutdown."""
    redis_client: aioredis.Redis | None = ctx.get("redis")
    if redis_client:
        await redis_client.aclose()
    await close_db()
    logger.info("Statistics worker shut down")


async def recompute_user_statistics(ctx: dict, user_id: int) -> int:  # type: ignore[type-arg]
    """Queued job: full recompute for one account. Returns the race count."""
    try:
        async with session_scope() as db:
            snapshot = await stats_service.recompute_statistics(db, user_id)
            await db.commit()
    except Exception:
        logger.exception("Failed to recompute statistics for user %d", user_id)
        raise
    return snapshot.total_races


async def recompute_stale_statistics(ctx: dict) -> int:  # type: ignore[type-arg]
    """Periodic task: rebuild the oldest stale statistics rows."""
    try:
        async with session_scope() as db:
            user_ids = await stats_service.recompute_stale_statistics(db)
            await db.commit()
    except Exception:
        logger.exception("Failed to recompute stale statistics")
        raise
    if user_ids:
        logger.info("Recomputed stale statistics for %d users", len(user_ids))
    return len(user_ids)


async def process_pending_sessions(ctx: dict) -> int:  # type: ignore[type-arg]
    """Periodic task: fold sessions the request path did not get to."""
    try:
        async with session_scope() as db:
            count = await stats_service.process_pending_sessions(db)
            await db.commit()
    except Exception:
        logger.exception("Failed to process pending sessions")
        raise
    if count:
        logger.info("Processed %d pending sessions", count)
    return count
