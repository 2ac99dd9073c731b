"""Per-user statistics: full recompute, incremental folding, staleness.

Rules:
- user_statistics is derived; a full recompute from race_sessions plus the
  current link always wins over whatever is stored
- re-link and unlink never patch, they mark the row stale and recompute
- incremental folding only moves forward: a session whose ingestion id is not
  above ``covered_through_id`` marks the row stale instead of being added
- a stale row is never served as fresh
"""

from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from kartpark.config import get_settings
from kartpark.db.models import LINK_LINKED, RaceSession, UserStatistics, WebUser
from kartpark.errors import NotFoundError, StaleStateError
from kartpark.sessions.service import (
    driver_name_matches,
    get_driver_results,
    list_unprocessed_sessions,
    max_session_pk,
)
from kartpark.stats.aggregator import RaceEntry, StatisticsAccumulator, StatisticsSnapshot
from kartpark.time_utils import utcnow

logger = logging.getLogger(__name__)

STATUS_FRESH = "fresh"
STATUS_RECOMPUTING = "recomputing"


def _recent_limit() -> int:
    return get_settings().stats_recent_sessions_limit


def _entry(result, race_session: RaceSession) -> RaceEntry:  # noqa: ANN001
    return RaceEntry(
        race_session_pk=race_session.id,
        session_id=race_session.session_id,
        session_name=race_session.session_name,
        session_date=race_session.session_date,
        session_type=race_session.session_type,
        kart_number=result.kart_number,
        final_position=result.final_position,
        best_time_ms=result.best_time_ms,
        total_laps=result.total_laps or 0,
        laps=tuple(result.laps or ()),
    )


async def _get_user(db: AsyncSession, user_id: int) -> WebUser:
    user = await db.get(WebUser, user_id)
    if user is None:
        raise NotFoundError(f"User {user_id} not found", user_id=user_id)
    return user


async def _get_stats_row(db: AsyncSession, user_id: int, *, lock: bool = False) -> UserStatistics | None:
    query = select(UserStatistics).where(UserStatistics.user_id == user_id)
    if lock:
        query = query.with_for_update()
    result = await db.execute(query)
    return result.scalar_one_or_none()


async def _lock_or_create_stats_row(db: AsyncSession, user_id: int) -> UserStatistics:
    """Lock the user's statistics row, creating an empty one first if needed.

    FOR UPDATE cannot lock a missing row, so two first reads may both try to
    insert; ON CONFLICT DO NOTHING lets the second fall through to the lock.
    """
    row = await _get_stats_row(db, user_id, lock=True)
    if row is not None:
        return row
    insert = pg_insert if db.get_bind().dialect.name == "postgresql" else sqlite_insert
    await db.execute(
        insert(UserStatistics)
        .values(user_id=user_id, covered_through_id=0)
        .on_conflict_do_nothing(index_elements=["user_id"])
    )
    row = await _get_stats_row(db, user_id, lock=True)
    if row is None:
        raise NotFoundError(f"User {user_id} not found", user_id=user_id)
    return row


def _write_snapshot(row: UserStatistics, snapshot: StatisticsSnapshot) -> None:
    for column, value in snapshot.to_row_values().items():
        setattr(row, column, value)
    row.is_stale = False
    row.stale_since = None


async def recompute_statistics(db: AsyncSession, user_id: int) -> StatisticsSnapshot:
    """Rebuild a user's statistics from every session matching the linked name."""
    user = await _get_user(db, user_id)
    row = await _lock_or_create_stats_row(db, user_id)

    covered = await max_session_pk(db)
    driver_name = user.driver_name if user.is_linked else None
    acc = StatisticsAccumulator(driver_name, _recent_limit())
    if driver_name:
        for result, race_session in await get_driver_results(db, driver_name):
            acc.add(_entry(result, race_session))
    snapshot = acc.snapshot(covered_through_id=covered, computed_at=utcnow())

    _write_snapshot(row, snapshot)
    await db.flush()

    logger.info(
        "Statistics recomputed for user %d (driver=%s, races=%d, covered_through=%d)",
        user_id, driver_name, snapshot.total_races, snapshot.covered_through_id,
    )
    return snapshot


async def mark_statistics_stale(db: AsyncSession, user_id: int) -> None:
    """Flag a user's statistics for recomputation. Creates the row if needed."""
    row = await _lock_or_create_stats_row(db, user_id)
    if not row.is_stale or row.stale_since is None:
        row.stale_since = utcnow()
    row.is_stale = True
    await db.flush()


async def get_statistics(
    db: AsyncSession,
    user_id: int,
    *,
    strict: bool = False,
) -> tuple[StatisticsSnapshot, str]:
    """Return ``(snapshot, status)`` for a user.

    A user without a statistics row is computed on the spot. A stale row is
    returned with status ``recomputing``, or raises StaleStateError when
    ``strict``.
    """
    await _get_user(db, user_id)
    row = await _get_stats_row(db, user_id)
    if row is None:
        return await recompute_statistics(db, user_id), STATUS_FRESH
    if row.is_stale:
        if strict:
            raise StaleStateError(
                f"Statistics for user {user_id} are being recomputed",
                user_id=user_id,
            )
        return StatisticsSnapshot.from_row(row), STATUS_RECOMPUTING
    return StatisticsSnapshot.from_row(row), STATUS_FRESH


async def _linked_users_for(db: AsyncSession, driver_name: str) -> list[WebUser]:
    result = await db.execute(
        select(WebUser)
        .where(
            WebUser.link_status == LINK_LINKED,
            driver_name_matches(WebUser.driver_name, driver_name),
        )
        .order_by(WebUser.id.asc())
    )
    return list(result.scalars().all())


async def apply_session(db: AsyncSession, race_session_pk: int) -> list[int]:
    """Fold one session into the statistics of every linked driver in it.

    Returns the ids of users whose statistics were touched. A session that
    is already processed is left alone.
    """
    result = await db.execute(
        select(RaceSession).where(RaceSession.id == race_session_pk).with_for_update()
    )
    race_session = result.scalar_one_or_none()
    if race_session is None:
        raise NotFoundError(f"Race session {race_session_pk} not found", race_session_pk=race_session_pk)
    if race_session.processed:
        return []

    touched: list[int] = []
    for driver_result in race_session.results:
        for user in await _linked_users_for(db, driver_result.driver_name):
            row = await _get_stats_row(db, user.id, lock=True)
            if row is None:
                await recompute_statistics(db, user.id)
            elif row.is_stale:
                pass
            elif (row.driver_name or "").lower() != (user.driver_name or "").lower():
                await mark_statistics_stale(db, user.id)
            elif race_session.id > row.covered_through_id:
                acc = StatisticsAccumulator.resume(StatisticsSnapshot.from_row(row), _recent_limit())
                acc.add(_entry(driver_result, race_session))
                _write_snapshot(row, acc.snapshot(computed_at=utcnow()))
            else:
                logger.info(
                    "Session %d arrived behind covered_through=%d for user %d, marking stale",
                    race_session.id, row.covered_through_id, user.id,
                )
                await mark_statistics_stale(db, user.id)
            touched.append(user.id)

    race_session.processed = True
    await db.flush()
    logger.info("Session %s processed (id=%d, users=%s)", race_session.session_id, race_session.id, touched)
    return touched


async def process_pending_sessions(db: AsyncSession, limit: int | None = None) -> int:
    """Apply every unprocessed session in ingestion order. Returns the count."""
    batch = limit if limit is not None else get_settings().session_processing_batch_size
    sessions = await list_unprocessed_sessions(db, batch)
    for race_session in sessions:
        await apply_session(db, race_session.id)
    return len(sessions)


async def recompute_stale_statistics(db: AsyncSession, limit: int | None = None) -> list[int]:
    """Recompute the oldest stale rows. Returns the user ids recomputed."""
    batch = limit if limit is not None else get_settings().stats_recompute_batch_size
    result = await db.execute(
        select(UserStatistics.user_id)
        .where(UserStatistics.is_stale.is_(True))
        .order_by(UserStatistics.stale_since.asc(), UserStatistics.user_id.asc())
        .limit(batch)
    )
    user_ids = [int(uid) for uid in result.scalars().all()]
    for user_id in user_ids:
        await recompute_statistics(db, user_id)
    return user_ids
