"""Squadron points ledger.

Rules:
- squadron_points_history is append-only; nothing updates or deletes entries
- a squadron's total is SUM(points_change); squadrons.total_points is only a
  display cache refreshed on every append
- each entry records previous_total/new_total, so the chain can be audited
- race_event deltas are idempotent per (event, squadron)
- totals never go below zero
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from kartpark.db.models import CHANGE_TYPES, Squadron, SquadronPointsHistory
from kartpark.errors import (
    EntryAlreadyRevertedError,
    IdempotencyKeyReusedError,
    InvariantViolationError,
    NegativePointsTotalError,
    NotFoundError,
    ValidationError,
)
from kartpark.time_utils import utcnow

logger = logging.getLogger(__name__)

MAX_REASON_LENGTH = 500
REVERT = "revert"
RACE_EVENT = "race_event"


@dataclass
class RankingEntry:
    rank: int
    squadron: Squadron
    total_points: int


@dataclass
class LedgerAudit:
    squadron_id: int
    entry_count: int
    ledger_total: int
    cached_total: int
    last_new_total: int
    broken_entry_ids: list[int] = field(default_factory=list)

    @property
    def consistent(self) -> bool:
        return (
            not self.broken_entry_ids
            and self.ledger_total == self.last_new_total
            and self.ledger_total == self.cached_total
        )


def race_event_key(race_event_id: str, squadron_id: int) -> str:
    return f"race_event:{race_event_id}:squadron:{squadron_id}"


def _validate_reason(reason: str | None) -> str:
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError("A reason is required for every points change")
    if len(reason) > MAX_REASON_LENGTH:
        raise ValidationError(f"Reason exceeds {MAX_REASON_LENGTH} characters", max_length=MAX_REASON_LENGTH)
    return reason


async def _lock_squadron(db: AsyncSession, squadron_id: int) -> Squadron:
    result = await db.execute(select(Squadron).where(Squadron.id == squadron_id).with_for_update())
    squadron = result.scalar_one_or_none()
    if squadron is None:
        raise NotFoundError(f"Squadron {squadron_id} not found", squadron_id=squadron_id)
    return squadron


async def _entry_by_key(db: AsyncSession, key: str) -> SquadronPointsHistory | None:
    result = await db.execute(
        select(SquadronPointsHistory).where(SquadronPointsHistory.idempotency_key == key)
    )
    return result.scalar_one_or_none()


async def current_total(db: AsyncSession, squadron_id: int) -> int:
    """Authoritative total: the ledger sum, 0 for an empty ledger."""
    result = await db.execute(
        select(func.coalesce(func.sum(SquadronPointsHistory.points_change), 0)).where(
            SquadronPointsHistory.squadron_id == squadron_id
        )
    )
    return int(result.scalar_one())


async def _append(
    db: AsyncSession,
    squadron: Squadron,
    points_change: int,
    reason: str,
    change_type: str,
    actor_id: int,
    race_event_id: str | None,
    metadata: dict[str, Any] | None,
    idempotency_key: str | None,
) -> SquadronPointsHistory:
    previous_total = await current_total(db, squadron.id)
    new_total = previous_total + points_change
    if new_total < 0:
        raise NegativePointsTotalError(
            f"Squadron total cannot go below zero ({previous_total} {points_change:+d})",
            squadron_id=squadron.id,
            previous_total=previous_total,
            points_change=points_change,
        )

    now = utcnow()
    entry = SquadronPointsHistory(
        squadron_id=squadron.id,
        race_event_id=race_event_id,
        points_change=points_change,
        previous_total=previous_total,
        new_total=new_total,
        reason=reason,
        change_type=change_type,
        modified_by=actor_id,
        entry_metadata=dict(metadata or {}),
        idempotency_key=idempotency_key,
        created_at=now,
    )
    db.add(entry)
    squadron.total_points = new_total
    squadron.updated_at = now
    try:
        await db.flush()
    except IntegrityError as e:
        await db.rollback()
        raise IdempotencyKeyReusedError(
            "Idempotency key already used", idempotency_key=idempotency_key
        ) from e

    logger.info(
        "Ledger entry %d: squadron %d %+d (%s) %d -> %d by %d",
        entry.id, squadron.id, points_change, change_type, previous_total, new_total, actor_id,
    )
    return entry


async def apply_delta(
    db: AsyncSession,
    squadron_id: int,
    points_change: int,
    reason: str,
    change_type: str,
    actor_id: int,
    race_event_id: str | None = None,
    metadata: dict[str, Any] | None = None,
    idempotency_key: str | None = None,
) -> int:
    """Append a points change and return the squadron's new total.

    A retry with an idempotency key that was already applied to this squadron
    appends nothing and returns the current total.
    """
    if isinstance(points_change, bool) or not isinstance(points_change, int):
        raise ValidationError("points_change must be an integer")
    if change_type not in CHANGE_TYPES:
        raise ValidationError(f"Unknown change type '{change_type}'", change_type=change_type)
    if change_type == REVERT:
        raise ValidationError("Reverts are created by reverting an entry")
    reason = _validate_reason(reason)
    if change_type == RACE_EVENT:
        if not race_event_id:
            raise ValidationError("race_event changes need a race_event_id")
        idempotency_key = idempotency_key or race_event_key(race_event_id, squadron_id)

    squadron = await _lock_squadron(db, squadron_id)

    if idempotency_key is not None:
        existing = await _entry_by_key(db, idempotency_key)
        if existing is not None:
            if existing.squadron_id != squadron_id:
                raise IdempotencyKeyReusedError(
                    "Idempotency key belongs to another squadron",
                    idempotency_key=idempotency_key,
                    squadron_id=existing.squadron_id,
                )
            logger.info("Ledger retry ignored: key %s already applied", idempotency_key)
            return await current_total(db, squadron_id)

    entry = await _append(
        db, squadron, points_change, reason, change_type, actor_id, race_event_id, metadata, idempotency_key,
    )
    return entry.new_total


async def revert_entry(
    db: AsyncSession,
    entry_id: int,
    actor_id: int,
    reason: str | None = None,
) -> SquadronPointsHistory:
    """Append an entry that negates ``entry_id``. Each entry can be reverted once."""
    original = await db.get(SquadronPointsHistory, entry_id)
    if original is None:
        raise NotFoundError(f"Ledger entry {entry_id} not found", entry_id=entry_id)
    if original.change_type == REVERT:
        raise InvariantViolationError("Revert entries cannot be reverted", entry_id=entry_id)

    squadron = await _lock_squadron(db, original.squadron_id)
    key = f"revert:{entry_id}"
    existing = await _entry_by_key(db, key)
    if existing is not None:
        raise EntryAlreadyRevertedError(
            f"Ledger entry {entry_id} was already reverted",
            entry_id=entry_id,
            revert_entry_id=existing.id,
        )

    text = _validate_reason(reason or f"Revert of entry {entry_id}: {original.reason}"[:MAX_REASON_LENGTH])
    return await _append(
        db,
        squadron,
        -original.points_change,
        text,
        REVERT,
        actor_id,
        original.race_event_id,
        {"reverted_entry_id": entry_id},
        key,
    )


async def compute_ranking(db: AsyncSession, include_inactive: bool = False) -> list[RankingEntry]:
    """Squadrons ordered by ledger total, fair-racing average, age, id."""
    total = func.coalesce(func.sum(SquadronPointsHistory.points_change), 0).label("total")
    query = (
        select(Squadron, total)
        .outerjoin(SquadronPointsHistory, SquadronPointsHistory.squadron_id == Squadron.id)
        .group_by(Squadron.id)
    )
    if not include_inactive:
        query = query.where(Squadron.is_active.is_(True))
    result = await db.execute(
        query.order_by(
            total.desc(),
            Squadron.fair_racing_average.desc(),
            Squadron.created_at.asc(),
            Squadron.id.asc(),
        )
    )
    return [
        RankingEntry(rank=i, squadron=row.Squadron, total_points=int(row.total))
        for i, row in enumerate(result, start=1)
    ]


async def get_history(
    db: AsyncSession,
    squadron_id: int,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[SquadronPointsHistory], int]:
    """Ledger entries for a squadron, newest first, with the entry count."""
    if await db.get(Squadron, squadron_id) is None:
        raise NotFoundError(f"Squadron {squadron_id} not found", squadron_id=squadron_id)
    count = await db.execute(
        select(func.count()).select_from(SquadronPointsHistory).where(
            SquadronPointsHistory.squadron_id == squadron_id
        )
    )
    result = await db.execute(
        select(SquadronPointsHistory)
        .where(SquadronPointsHistory.squadron_id == squadron_id)
        .order_by(SquadronPointsHistory.id.desc())
        .offset(offset)
        .limit(limit)
    )
    return list(result.scalars().all()), int(count.scalar_one())


async def verify_ledger(db: AsyncSession, squadron_id: int) -> LedgerAudit:
    """Walk the chain: each previous_total must equal the prior new_total."""
    squadron = await db.get(Squadron, squadron_id)
    if squadron is None:
        raise NotFoundError(f"Squadron {squadron_id} not found", squadron_id=squadron_id)
    result = await db.execute(
        select(SquadronPointsHistory)
        .where(SquadronPointsHistory.squadron_id == squadron_id)
        .order_by(SquadronPointsHistory.id.asc())
    )
    entries = list(result.scalars().all())

    broken: list[int] = []
    running = 0
    for entry in entries:
        if entry.previous_total != running or entry.new_total != entry.previous_total + entry.points_change:
            broken.append(entry.id)
        running = entry.new_total

    audit = LedgerAudit(
        squadron_id=squadron_id,
        entry_count=len(entries),
        ledger_total=sum(e.points_change for e in entries),
        cached_total=squadron.total_points,
        last_new_total=entries[-1].new_total if entries else 0,
        broken_entry_ids=broken,
    )
    if not audit.consistent:
        logger.warning(
            "Ledger audit failed for squadron %d: sum=%d last=%d cache=%d broken=%s",
            squadron_id, audit.ledger_total, audit.last_new_total, audit.cached_total, broken,
        )
    return audit


async def refresh_total_cache(db: AsyncSession, squadron_id: int) -> int:
    """Overwrite the display cache with the ledger sum."""
    squadron = await _lock_squadron(db, squadron_id)
    squadron.total_points = await current_total(db, squadron_id)
    squadron.updated_at = utcnow()
    await db.flush()
    return squadron.total_points
