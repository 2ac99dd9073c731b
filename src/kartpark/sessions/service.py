"""Session store.

Sessions are append-only: once recorded, only ``processed`` ever changes.
Re-delivery of the same external ``session_id`` is a no-op.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import datetime
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from kartpark.db.models import SESSION_TYPES, DriverResult, RaceSession
from kartpark.errors import NotFoundError, ValidationError
from kartpark.time_utils import as_utc, utcnow

logger = logging.getLogger(__name__)


def normalize_driver_name(name: str | None) -> str:
    """Trim and collapse inner whitespace. Case is preserved for display."""
    if name is None:
        return ""
    return " ".join(name.split())


def driver_name_matches(column: Any, name: str) -> Any:  # noqa: ANN401
    """Case-insensitive equality clause for a driver-name column."""
    return func.lower(column) == normalize_driver_name(name).lower()


async def get_session_by_external_id(db: AsyncSession, session_id: str) -> RaceSession | None:
    """Get a race session by its timing-system key."""
    result = await db.execute(select(RaceSession).where(RaceSession.session_id == session_id))
    return result.scalar_one_or_none()


async def require_session(db: AsyncSession, session_id: str) -> RaceSession:
    """Like get_session_by_external_id but raises NotFoundError."""
    race_session = await get_session_by_external_id(db, session_id)
    if race_session is None:
        raise NotFoundError(f"Session '{session_id}' not found", session_id=session_id)
    return race_session


def find_result(race_session: RaceSession, driver_name: str) -> DriverResult | None:
    """Return the session line for ``driver_name`` (case-insensitive), if any."""
    wanted = normalize_driver_name(driver_name).lower()
    for result in race_session.results:
        if result.driver_name.lower() == wanted:
            return result
    return None


async def record_session(
    db: AsyncSession,
    session_id: str,
    session_name: str,
    session_date: datetime,
    session_type: str,
    results: Sequence[dict[str, Any]],
) -> tuple[RaceSession, bool]:
    """Record a session from the timing feed.

    Returns ``(session, created)``; ``created`` is False when the session was
    already stored.
    """
    if session_type not in SESSION_TYPES:
        raise ValidationError(f"Unknown session type '{session_type}'", session_type=session_type)
    if not results:
        raise ValidationError("A session needs at least one driver result")

    existing = await get_session_by_external_id(db, session_id)
    if existing is not None:
        return existing, False

    race_session = RaceSession(
        session_id=session_id,
        session_name=session_name,
        session_date=as_utc(session_date),
        session_type=session_type,
        processed=False,
        created_at=utcnow(),
    )
    seen: set[str] = set()
    for ordinal, row in enumerate(results):
        name = normalize_driver_name(row.get("driver_name"))
        if not name:
            raise ValidationError("Driver name must not be blank", ordinal=ordinal)
        if name.lower() in seen:
            raise ValidationError(f"Driver '{name}' appears twice in the session", driver_name=name)
        seen.add(name.lower())
        race_session.results.append(
            DriverResult(
                ordinal=ordinal,
                driver_name=name,
                kart_number=row.get("kart_number"),
                final_position=row.get("final_position"),
                best_time_ms=row.get("best_time_ms"),
                last_time_ms=row.get("last_time_ms"),
                total_laps=row.get("total_laps") or len(row.get("laps") or []),
                laps=list(row.get("laps") or []),
            )
        )

    db.add(race_session)
    try:
        await db.flush()
    except IntegrityError:
        # Concurrent delivery of the same session won the insert.
        await db.rollback()
        existing = await get_session_by_external_id(db, session_id)
        if existing is None:
            raise
        return existing, False

    logger.info(
        "Session recorded: %s (id=%d, drivers=%d, type=%s)",
        session_id, race_session.id, len(race_session.results), session_type,
    )
    return race_session, True


async def list_recent_sessions(
    db: AsyncSession,
    limit: int = 20,
    session_type: str | None = None,
) -> list[RaceSession]:
    """Most recent sessions first."""
    query = select(RaceSession)
    if session_type is not None:
        query = query.where(RaceSession.session_type == session_type)
    result = await db.execute(
        query.order_by(RaceSession.session_date.desc(), RaceSession.id.desc()).limit(limit)
    )
    return list(result.scalars().all())


async def list_unprocessed_sessions(db: AsyncSession, limit: int = 100) -> list[RaceSession]:
    """Sessions not yet folded into statistics, in ingestion order."""
    result = await db.execute(
        select(RaceSession)
        .where(RaceSession.processed.is_(False))
        .order_by(RaceSession.id.asc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def get_driver_results(
    db: AsyncSession,
    driver_name: str,
    *,
    newest_first: bool = False,
    limit: int | None = None,
) -> list[tuple[DriverResult, RaceSession]]:
    """All result lines for a driver name with their sessions.

    Default order is chronological (session date, then ingestion id).
    """
    order = (
        (RaceSession.session_date.desc(), RaceSession.id.desc())
        if newest_first
        else (RaceSession.session_date.asc(), RaceSession.id.asc())
    )
    query = (
        select(DriverResult, RaceSession)
        .join(RaceSession, DriverResult.race_session_id == RaceSession.id)
        .where(driver_name_matches(DriverResult.driver_name, driver_name))
        .order_by(*order)
    )
    if limit is not None:
        query = query.limit(limit)
    result = await db.execute(query)
    return [(row.DriverResult, row.RaceSession) for row in result]


async def get_driver_history(db: AsyncSession, driver_name: str, limit: int = 50) -> list[dict[str, Any]]:
    """A driver's race history, newest first."""
    name = normalize_driver_name(driver_name)
    if not name:
        raise ValidationError("Driver name must not be blank")
    rows = await get_driver_results(db, name, newest_first=True, limit=limit)
    return [
        {
            "session_id": race_session.session_id,
            "session_name": race_session.session_name,
            "session_date": as_utc(race_session.session_date),
            "session_type": race_session.session_type,
            "kart_number": result.kart_number,
            "final_position": result.final_position,
            "best_time_ms": result.best_time_ms,
            "total_laps": result.total_laps,
        }
        for result, race_session in rows
    ]


async def max_session_pk(db: AsyncSession) -> int:
    """Highest ingestion id recorded so far (0 when empty)."""
    result = await db.execute(select(func.coalesce(func.max(RaceSession.id), 0)))
    return int(result.scalar_one())
