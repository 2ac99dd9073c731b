"""Identity resolver: which accounts could a kiosk driver name belong to?

Read-only. Nothing here writes a link; approval in the linkage workflow is
the only place that does.

Confidence levels, strongest first:
- confirmed: exactly one account is linked to the name
- conflict: two or more accounts are linked to the name (never auto-picked)
- likely: historical approval, alias, or full name match
- possible: first and last name tokens found in the name, or a pending request
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from kartpark.db.models import (
    LINK_LINKED,
    REQUEST_APPROVED,
    REQUEST_PENDING,
    DriverResult,
    LinkageRequest,
    RaceSession,
    WebUser,
)
from kartpark.errors import ValidationError
from kartpark.sessions.service import (
    driver_name_matches,
    find_result,
    normalize_driver_name,
    require_session,
)
from kartpark.stats.aggregator import effective_best_time
from kartpark.time_utils import as_utc

logger = logging.getLogger(__name__)

CONFIRMED = "confirmed"
CONFLICT = "conflict"
LIKELY = "likely"
POSSIBLE = "possible"

_RANK = {CONFIRMED: 0, CONFLICT: 1, LIKELY: 2, POSSIBLE: 3}


@dataclass
class Candidate:
    account: WebUser
    confidence: str
    evidence: list[str] = field(default_factory=list)

    def merge(self, confidence: str, evidence: str) -> None:
        if _RANK[confidence] < _RANK[self.confidence]:
            self.confidence = confidence
        if evidence not in self.evidence:
            self.evidence.append(evidence)


def _require_name(driver_name: str) -> str:
    name = normalize_driver_name(driver_name)
    if not name:
        raise ValidationError("Driver name must not be blank")
    return name


def _tokens(text: str | None) -> list[str]:
    return normalize_driver_name(text).lower().split()


def _name_evidence(user: WebUser, name_lower: str) -> list[tuple[str, str]]:
    """Name-based matches of ``user`` against a lower-cased driver name."""
    found: list[tuple[str, str]] = []
    if user.alias and normalize_driver_name(user.alias).lower() == name_lower:
        found.append((LIKELY, "alias_match"))

    first = " ".join(_tokens(user.first_name))
    last = " ".join(_tokens(user.last_name))
    if first and last:
        if name_lower in (f"{first} {last}", f"{last} {first}"):
            found.append((LIKELY, "full_name_match"))
        name_tokens = set(name_lower.split())
        if set(first.split()) <= name_tokens and set(last.split()) <= name_tokens:
            found.append((POSSIBLE, "name_tokens_match"))
    return found


async def _linked_accounts(db: AsyncSession, name: str) -> list[WebUser]:
    result = await db.execute(
        select(WebUser)
        .where(
            WebUser.link_status == LINK_LINKED,
            driver_name_matches(WebUser.driver_name, name),
        )
        .order_by(WebUser.id.asc())
    )
    return list(result.scalars().all())


async def resolve_candidates(
    db: AsyncSession,
    driver_name: str,
    session_id: str | None = None,
) -> list[Candidate]:
    """Rank the accounts that could own ``driver_name``.

    ``session_id`` is the proof session the driver picked. It must exist, and
    if the name is not in it there are no candidates.
    """
    name = _require_name(driver_name)
    name_lower = name.lower()

    if session_id is not None:
        race_session = await require_session(db, session_id)
        if find_result(race_session, name) is None:
            return []

    linked = await _linked_accounts(db, name)
    if len(linked) == 1:
        return [Candidate(linked[0], CONFIRMED, ["linked_driver_name"])]
    if len(linked) > 1:
        logger.warning("Driver name '%s' is linked to %d accounts", name, len(linked))
        return [Candidate(user, CONFLICT, ["linked_driver_name"]) for user in linked]

    candidates: dict[int, Candidate] = {}

    def add(user: WebUser, confidence: str, evidence: str) -> None:
        if user.id in candidates:
            candidates[user.id].merge(confidence, evidence)
        else:
            candidates[user.id] = Candidate(user, confidence, [evidence])

    # Historical approvals: the account was linked to this name before.
    approved = await db.execute(
        select(LinkageRequest, WebUser)
        .join(WebUser, LinkageRequest.web_user_id == WebUser.id)
        .where(
            LinkageRequest.status == REQUEST_APPROVED,
            driver_name_matches(LinkageRequest.selected_driver_name, name),
        )
    )
    for row in approved:
        add(row.WebUser, LIKELY, "approved_request_history")

    # Name-based matches among accounts not linked to some other name.
    name_filters = [func.lower(WebUser.alias) == name_lower]
    name_filters += [func.lower(WebUser.last_name).contains(tok, autoescape=True) for tok in name_lower.split()]
    pool = await db.execute(
        select(WebUser).where(
            or_(WebUser.link_status != LINK_LINKED, WebUser.driver_name.is_(None)),
            or_(*name_filters),
        )
    )
    for user in pool.scalars().all():
        for confidence, evidence in _name_evidence(user, name_lower):
            add(user, confidence, evidence)

    # Pending requests that selected this name.
    pending = await db.execute(
        select(LinkageRequest, WebUser)
        .join(WebUser, LinkageRequest.web_user_id == WebUser.id)
        .where(
            LinkageRequest.status == REQUEST_PENDING,
            driver_name_matches(LinkageRequest.selected_driver_name, name),
        )
    )
    for row in pending:
        if session_id is not None and row.LinkageRequest.selected_session_id == session_id:
            add(row.WebUser, LIKELY, "pending_request_same_session")
        else:
            add(row.WebUser, POSSIBLE, "pending_request")

    return sorted(
        candidates.values(),
        key=lambda c: (_RANK[c.confidence], -len(c.evidence), c.account.id),
    )


async def search_drivers(db: AsyncSession, query: str, limit: int = 20) -> list[dict[str, Any]]:
    """Distinct driver names seen in sessions that contain ``query``."""
    text = _require_name(query)
    key = func.lower(DriverResult.driver_name)
    result = await db.execute(
        select(
            func.min(DriverResult.driver_name).label("driver_name"),
            func.count(DriverResult.id).label("race_count"),
            func.max(RaceSession.session_date).label("last_race_at"),
        )
        .join(RaceSession, DriverResult.race_session_id == RaceSession.id)
        .where(key.contains(text.lower(), autoescape=True))
        .group_by(key)
        .order_by(func.count(DriverResult.id).desc(), key.asc())
        .limit(limit)
    )
    rows = result.all()

    lowered = [r.driver_name.lower() for r in rows]
    owners: dict[str, list[int]] = {}
    if lowered:
        linked = await db.execute(
            select(WebUser.id, WebUser.driver_name).where(
                WebUser.link_status == LINK_LINKED,
                func.lower(WebUser.driver_name).in_(lowered),
            )
        )
        for user_id, linked_name in linked:
            owners.setdefault(linked_name.lower(), []).append(user_id)

    drivers = []
    for r in rows:
        linked_ids = owners.get(r.driver_name.lower(), [])
        drivers.append({
            "driver_name": r.driver_name,
            "race_count": r.race_count,
            "last_race_at": as_utc(r.last_race_at),
            "linked_user_id": linked_ids[0] if len(linked_ids) == 1 else None,
            "is_linked": bool(linked_ids),
        })
    return drivers


async def get_session_drivers(db: AsyncSession, session_id: str) -> list[dict[str, Any]]:
    """Drivers of one session, in timing-system order."""
    race_session = await require_session(db, session_id)
    names = [r.driver_name.lower() for r in race_session.results]
    linked: set[str] = set()
    if names:
        result = await db.execute(
            select(WebUser.driver_name).where(
                WebUser.link_status == LINK_LINKED,
                func.lower(WebUser.driver_name).in_(names),
            )
        )
        linked = {n.lower() for n in result.scalars().all()}

    return [
        {
            "driver_name": r.driver_name,
            "kart_number": r.kart_number,
            "final_position": r.final_position,
            "best_time_ms": effective_best_time(r.best_time_ms, r.laps or []),
            "total_laps": r.total_laps,
            "is_linked": r.driver_name.lower() in linked,
        }
        for r in race_session.results
    ]
