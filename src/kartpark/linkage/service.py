"""Linkage request workflow.

Rules:
- pending -> approved | rejected | cancelled; terminal states never move
- at most one pending request per account (partial unique index)
- approval is the only path that writes ``link_status = linked``
- a driver name is linked to at most one account; approval re-checks this
  under a per-name lock before writing
- approval marks statistics stale; the recompute runs after commit
"""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import func, select, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from kartpark.db.models import (
    LINK_LINKED,
    LINK_PENDING_FIRST_RACE,
    REQUEST_APPROVED,
    REQUEST_CANCELLED,
    REQUEST_PENDING,
    REQUEST_REJECTED,
    LinkageRequest,
    WebUser,
)
from kartpark.errors import (
    AccountAlreadyLinkedError,
    ConflictingLinkError,
    DuplicatePendingRequestError,
    NotFoundError,
    PermissionDeniedError,
    RequestAlreadyResolvedError,
    ValidationError,
)
from kartpark.sessions.service import (
    driver_name_matches,
    find_result,
    get_driver_results,
    normalize_driver_name,
    require_session,
)
from kartpark.stats.aggregator import effective_best_time
from kartpark.stats.service import mark_statistics_stale, recompute_statistics
from kartpark.time_utils import as_utc, utcnow

logger = logging.getLogger(__name__)

MAX_REASON_LENGTH = 1000
REQUEST_STATUSES = (REQUEST_PENDING, REQUEST_APPROVED, REQUEST_REJECTED, REQUEST_CANCELLED)


async def _lock_user(db: AsyncSession, user_id: int) -> WebUser:
    result = await db.execute(select(WebUser).where(WebUser.id == user_id).with_for_update())
    user = result.scalar_one_or_none()
    if user is None:
        raise NotFoundError(f"User {user_id} not found", user_id=user_id)
    return user


async def _lock_request(db: AsyncSession, request_id: int) -> LinkageRequest:
    result = await db.execute(
        select(LinkageRequest).where(LinkageRequest.id == request_id).with_for_update()
    )
    req = result.scalar_one_or_none()
    if req is None:
        raise NotFoundError(f"Linkage request {request_id} not found", request_id=request_id)
    return req


def _require_pending(req: LinkageRequest) -> None:
    if req.status != REQUEST_PENDING:
        raise RequestAlreadyResolvedError(
            f"Linkage request {req.id} is already {req.status}",
            request_id=req.id,
            status=req.status,
        )


async def _lock_driver_name(db: AsyncSession, driver_name: str) -> None:
    """Serialize approvals for one driver name until the transaction ends.

    PostgreSQL only; SQLite already serializes writers.
    """
    if db.get_bind().dialect.name != "postgresql":
        return
    await db.execute(
        text("SELECT pg_advisory_xact_lock(hashtext(:name))"),
        {"name": driver_name.lower()},
    )


async def _driver_snapshot(db: AsyncSession, driver_name: str, race_session: Any, result: Any) -> dict[str, Any]:  # noqa: ANN401
    """Race history summary shown to the reviewer."""
    rows = await get_driver_results(db, driver_name)
    times = [t for t in (effective_best_time(r.best_time_ms, r.laps or []) for r, _ in rows) if t is not None]
    dates = [as_utc(s.session_date) for _, s in rows]
    return {
        "driver_name": result.driver_name,
        "total_races": len(rows),
        "best_time_ms": min(times) if times else None,
        "first_race_at": min(dates).isoformat() if dates else None,
        "last_race_at": max(dates).isoformat() if dates else None,
        "proof_session": {
            "session_id": race_session.session_id,
            "session_name": race_session.session_name,
            "session_date": as_utc(race_session.session_date).isoformat(),
            "final_position": result.final_position,
            "kart_number": result.kart_number,
            "best_time_ms": effective_best_time(result.best_time_ms, result.laps or []),
        },
    }


async def create_request(
    db: AsyncSession,
    user_id: int,
    searched_name: str,
    selected_driver_name: str,
    selected_session_id: str,
) -> LinkageRequest:
    """Submit a request to link ``user_id`` to a driver name seen in a session."""
    user = await _lock_user(db, user_id)
    if user.is_linked:
        raise AccountAlreadyLinkedError(
            f"Account is already linked to '{user.driver_name}'",
            user_id=user_id,
            driver_name=user.driver_name,
        )

    name = normalize_driver_name(selected_driver_name)
    if not name:
        raise ValidationError("Driver name must not be blank")
    race_session = await require_session(db, selected_session_id)
    result = find_result(race_session, name)
    if result is None:
        raise ValidationError(
            f"Driver '{name}' did not race in session '{selected_session_id}'",
            driver_name=name,
            session_id=selected_session_id,
        )

    existing = await db.execute(
        select(LinkageRequest.id).where(
            LinkageRequest.web_user_id == user_id,
            LinkageRequest.status == REQUEST_PENDING,
        )
    )
    existing_id = existing.scalar_one_or_none()
    if existing_id is not None:
        raise DuplicatePendingRequestError(
            "You already have a pending linkage request",
            user_id=user_id,
            request_id=existing_id,
        )

    now = utcnow()
    req = LinkageRequest(
        web_user_id=user_id,
        searched_name=normalize_driver_name(searched_name) or name,
        selected_driver_name=result.driver_name,
        selected_session_id=race_session.session_id,
        status=REQUEST_PENDING,
        user_snapshot={
            "email": user.email,
            "first_name": user.first_name,
            "last_name": user.last_name,
            "alias": user.alias,
        },
        driver_snapshot=await _driver_snapshot(db, result.driver_name, race_session, result),
        created_at=now,
        updated_at=now,
    )
    db.add(req)
    try:
        await db.flush()
    except IntegrityError as e:
        # Lost the race against a concurrent submission.
        await db.rollback()
        raise DuplicatePendingRequestError(
            "You already have a pending linkage request", user_id=user_id
        ) from e

    logger.info(
        "Linkage request created: id=%d user=%d driver='%s' session=%s",
        req.id, user_id, req.selected_driver_name, req.selected_session_id,
    )
    return req


async def approve_request(
    db: AsyncSession,
    request_id: int,
    admin_id: int,
    notes: str | None = None,
) -> LinkageRequest:
    """Approve a pending request and write the account link."""
    req = await _lock_request(db, request_id)
    _require_pending(req)
    user = await _lock_user(db, req.web_user_id)
    if user.is_linked:
        raise AccountAlreadyLinkedError(
            f"Account is already linked to '{user.driver_name}'",
            user_id=user.id,
            driver_name=user.driver_name,
        )

    name = req.selected_driver_name
    await _lock_driver_name(db, name)
    holders = await db.execute(
        select(WebUser.id)
        .where(
            WebUser.id != user.id,
            WebUser.link_status == LINK_LINKED,
            driver_name_matches(WebUser.driver_name, name),
        )
        .order_by(WebUser.id.asc())
    )
    conflicting = [int(uid) for uid in holders.scalars().all()]
    if conflicting:
        logger.warning(
            "Linkage request %d blocked: '%s' already linked to %s", request_id, name, conflicting,
        )
        raise ConflictingLinkError(name, conflicting)

    now = utcnow()
    user.driver_name = name
    user.link_status = LINK_LINKED
    user.linked_at = now
    user.updated_at = now

    req.status = REQUEST_APPROVED
    req.reviewed_at = now
    req.reviewed_by = admin_id
    if notes:
        req.admin_notes = notes
    req.updated_at = now

    await mark_statistics_stale(db, user.id)
    await db.flush()
    logger.info("Linkage request %d approved by %d: user %d -> '%s'", request_id, admin_id, user.id, name)
    return req


async def reject_request(
    db: AsyncSession,
    request_id: int,
    admin_id: int,
    reason: str,
    notes: str | None = None,
) -> LinkageRequest:
    """Reject a pending request. The account is not touched."""
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError("A rejection reason is required")
    if len(reason) > MAX_REASON_LENGTH:
        raise ValidationError(f"Rejection reason exceeds {MAX_REASON_LENGTH} characters")

    req = await _lock_request(db, request_id)
    _require_pending(req)

    now = utcnow()
    req.status = REQUEST_REJECTED
    req.reviewed_at = now
    req.reviewed_by = admin_id
    req.rejection_reason = reason
    if notes:
        req.admin_notes = notes
    req.updated_at = now
    await db.flush()
    logger.info("Linkage request %d rejected by %d", request_id, admin_id)
    return req


async def cancel_request(db: AsyncSession, request_id: int, user_id: int) -> LinkageRequest:
    """Owner withdraws a pending request."""
    req = await _lock_request(db, request_id)
    if req.web_user_id != user_id:
        raise PermissionDeniedError("Only the requester can cancel a linkage request", request_id=request_id)
    _require_pending(req)

    now = utcnow()
    req.status = REQUEST_CANCELLED
    req.updated_at = now
    await db.flush()
    logger.info("Linkage request %d cancelled by user %d", request_id, user_id)
    return req


async def get_request(db: AsyncSession, request_id: int) -> LinkageRequest:
    req = await db.get(LinkageRequest, request_id)
    if req is None:
        raise NotFoundError(f"Linkage request {request_id} not found", request_id=request_id)
    return req


async def list_requests(
    db: AsyncSession,
    status: str | None = None,
    page: int = 1,
    per_page: int = 20,
) -> tuple[list[LinkageRequest], int]:
    """Review queue, oldest first (paginated)."""
    if status is not None and status not in REQUEST_STATUSES:
        raise ValidationError(f"Unknown request status '{status}'", status=status)

    count_query = select(func.count()).select_from(LinkageRequest)
    query = select(LinkageRequest)
    if status is not None:
        count_query = count_query.where(LinkageRequest.status == status)
        query = query.where(LinkageRequest.status == status)

    total = (await db.execute(count_query)).scalar_one()
    result = await db.execute(
        query.order_by(LinkageRequest.created_at.asc(), LinkageRequest.id.asc())
        .offset((page - 1) * per_page)
        .limit(per_page)
    )
    return list(result.scalars().all()), int(total)


async def pending_count(db: AsyncSession) -> int:
    result = await db.execute(
        select(func.count()).select_from(LinkageRequest).where(LinkageRequest.status == REQUEST_PENDING)
    )
    return int(result.scalar_one())


async def get_user_requests(db: AsyncSession, user_id: int) -> list[LinkageRequest]:
    """A user's own requests, newest first."""
    result = await db.execute(
        select(LinkageRequest)
        .where(LinkageRequest.web_user_id == user_id)
        .order_by(LinkageRequest.created_at.desc(), LinkageRequest.id.desc())
    )
    return list(result.scalars().all())


async def unlink_account(db: AsyncSession, user_id: int, admin_id: int) -> WebUser:
    """Admin clears an account link and rebuilds its statistics."""
    user = await _lock_user(db, user_id)
    if not user.is_linked:
        raise ValidationError("Account is not linked", user_id=user_id)

    previous = user.driver_name
    now = utcnow()
    user.driver_name = None
    user.link_status = LINK_PENDING_FIRST_RACE
    user.linked_at = None
    user.updated_at = now
    await db.flush()

    await recompute_statistics(db, user_id)
    logger.info("Account %d unlinked from '%s' by admin %d", user_id, previous, admin_id)
    return user
