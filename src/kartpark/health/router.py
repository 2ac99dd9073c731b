"""Liveness, readiness and version probes."""

from fastapi import APIRouter, Depends
from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from kartpark.config import get_settings
from kartpark.database import get_session
from kartpark.redis_client import get_redis
from kartpark.sessions.capture import is_capture_enabled

router = APIRouter()


async def _database_check(db: AsyncSession) -> str:
    try:
        await db.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        return f"error: {exc}"
    return "ok"


async def _redis_check() -> tuple[str, bool | None]:
    """Ping Redis and read the capture flag. The flag is None when Redis is down."""
    try:
        redis = get_redis()
        await redis.ping()
        return "ok", await is_capture_enabled(redis)
    except (RuntimeError, RedisError) as exc:
        return f"error: {exc}", None


@router.get("/health")
async def health() -> dict[str, str]:
    return {"status": "healthy"}


@router.get("/ready")
async def readiness(
    db: AsyncSession = Depends(get_session),  # noqa: B008
) -> dict[str, object]:
    """The database is required; without Redis the API serves but reports degraded.

    ``lap_capture`` shows the effective switch so that a stopped ingestion
    is visible from the probe.
    """
    redis_status, capture = await _redis_check()
    checks = {"database": await _database_check(db), "redis": redis_status}
    if capture is None:
        capture = get_settings().lap_capture_enabled_default
    return {
        "status": "ready" if all(v == "ok" for v in checks.values()) else "degraded",
        "checks": checks,
        "lap_capture": "enabled" if capture else "disabled",
    }


@router.get("/version")
async def version() -> dict[str, str]:
    settings = get_settings()
    return {"service": "kartpark-api", "version": settings.app_version, "environment": settings.environment}
