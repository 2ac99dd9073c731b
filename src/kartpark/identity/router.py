"""Driver lookup endpoints used by the linking UI and the review screen."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from kartpark.auth.dependencies import get_current_user, require_admin
from kartpark.database import get_session
from kartpark.db.models import WebUser
from kartpark.identity.resolver import get_session_drivers, resolve_candidates, search_drivers
from kartpark.identity.schemas import (
    AccountSummary,
    CandidateResponse,
    DriverSearchItem,
    DriverSearchResponse,
    ResolveResponse,
    SessionDriverItem,
    SessionDriversResponse,
)

router = APIRouter(prefix="/api/v1", tags=["Drivers"])


def account_summary(user: WebUser) -> AccountSummary:
    return AccountSummary(
        id=user.id,
        display_name=user.display_name,
        first_name=user.first_name,
        last_name=user.last_name,
        alias=user.alias,
        driver_name=user.driver_name,
        link_status=user.link_status,
    )


@router.get("/drivers/search", response_model=DriverSearchResponse)
async def search_drivers_endpoint(
    q: str = Query(..., min_length=1, max_length=128),
    limit: int = Query(20, ge=1, le=100),
    _user: WebUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
) -> DriverSearchResponse:
    """Search driver names seen in timing data."""
    drivers = await search_drivers(db, q, limit)
    return DriverSearchResponse(query=q, drivers=[DriverSearchItem(**d) for d in drivers])


@router.get("/drivers/resolve", response_model=ResolveResponse)
async def resolve_driver_endpoint(
    name: str = Query(..., min_length=1, max_length=128),
    session_id: str | None = Query(None, max_length=128),
    _admin: WebUser = Depends(require_admin),
    db: AsyncSession = Depends(get_session),
) -> ResolveResponse:
    """Rank candidate accounts for a driver name (admin review aid)."""
    candidates = await resolve_candidates(db, name, session_id)
    return ResolveResponse(
        driver_name=name,
        session_id=session_id,
        candidates=[
            CandidateResponse(
                account=account_summary(c.account),
                confidence=c.confidence,
                evidence=c.evidence,
            )
            for c in candidates
        ],
    )


@router.get("/sessions/{session_id}/drivers", response_model=SessionDriversResponse)
async def session_drivers_endpoint(
    session_id: str,
    _user: WebUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
) -> SessionDriversResponse:
    """Drivers of one session, used to pick a proof session."""
    drivers = await get_session_drivers(db, session_id)
    return SessionDriversResponse(session_id=session_id, drivers=[SessionDriverItem(**d) for d in drivers])
