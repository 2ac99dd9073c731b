"""Shared lap-capture switch.

Held in Redis so every API instance and the ingester see the same state.
When Redis is missing or unreachable the configured default applies, so a
Redis outage never drops a timing upload.
"""

from __future__ import annotations

import logging

from redis.exceptions import RedisError

from kartpark.config import get_settings

logger = logging.getLogger(__name__)

CAPTURE_KEY = "config:lap_capture_enabled"


def _default() -> bool:
    return get_settings().lap_capture_enabled_default


async def is_capture_enabled(redis: object | None) -> bool:
    """Return whether incoming sessions should be recorded."""
    if redis is None:
        return _default()
    try:
        raw = await redis.get(CAPTURE_KEY)  # type: ignore[union-attr]
    except RedisError as e:
        logger.warning("Lap capture flag unreadable, using default: %s", e)
        return _default()
    if raw is None:
        return _default()
    return raw == "1"


async def set_capture_enabled(redis: object, enabled: bool) -> bool:
    """Set the switch. Returns the previous state."""
    previous = await is_capture_enabled(redis)
    await redis.set(CAPTURE_KEY, "1" if enabled else "0")  # type: ignore[attr-defined]
    logger.info("Lap capture changed from %s to %s", previous, enabled)
    return previous


async def reset_capture(redis: object) -> bool:
    """Drop the stored override and return the default state."""
    await redis.delete(CAPTURE_KEY)  # type: ignore[attr-defined]
    default = _default()
    logger.info("Lap capture reset to default (%s)", default)
    return default
