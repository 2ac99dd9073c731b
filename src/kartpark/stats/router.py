"""Racing statistics endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from kartpark.auth.dependencies import get_current_user, require_admin
from kartpark.database import get_session
from kartpark.db.models import WebUser
from kartpark.stats.aggregator import StatisticsSnapshot
from kartpark.stats.schemas import (
    MonthlyStatsResponse,
    ProcessPendingResponse,
    RecentSessionResponse,
    StatisticsResponse,
)
from kartpark.stats.service import (
    STATUS_FRESH,
    get_statistics,
    process_pending_sessions,
    recompute_statistics,
)

router = APIRouter(prefix="/api/v1", tags=["Statistics"])


def to_response(user_id: int, snapshot: StatisticsSnapshot, status: str) -> StatisticsResponse:
    return StatisticsResponse(
        user_id=user_id,
        status=status,
        driver_name=snapshot.driver_name,
        total_races=snapshot.total_races,
        timed_races=snapshot.timed_races,
        best_time_ms=snapshot.best_time_ms,
        average_time_ms=snapshot.average_time_ms,
        podium_finishes=snapshot.podium_finishes,
        podium_percentage=snapshot.podium_percentage,
        first_places=snapshot.first_places,
        second_places=snapshot.second_places,
        third_places=snapshot.third_places,
        best_position=snapshot.best_position,
        total_laps=snapshot.total_laps,
        favorite_kart=snapshot.favorite_kart,
        first_race_at=snapshot.first_race_at,
        last_race_at=snapshot.last_race_at,
        recent_sessions=[RecentSessionResponse(**item) for item in snapshot.recent_sessions],
        monthly_stats=[MonthlyStatsResponse(**item) for item in snapshot.monthly_stats],
        computed_at=snapshot.computed_at,
    )


@router.get("/stats/me", response_model=StatisticsResponse)
async def my_stats_endpoint(
    strict: bool = Query(False),
    user: WebUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
) -> StatisticsResponse:
    """The caller's racing statistics with their freshness."""
    snapshot, status = await get_statistics(db, user.id, strict=strict)
    await db.commit()
    return to_response(user.id, snapshot, status)


@router.get("/users/{user_id}/stats", response_model=StatisticsResponse)
async def user_stats_endpoint(
    user_id: int,
    strict: bool = Query(False),
    _viewer: WebUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
) -> StatisticsResponse:
    """Another account's racing statistics."""
    snapshot, status = await get_statistics(db, user_id, strict=strict)
    await db.commit()
    return to_response(user_id, snapshot, status)


@router.post("/admin/stats/{user_id}/recompute", response_model=StatisticsResponse)
async def recompute_stats_endpoint(
    user_id: int,
    _admin: WebUser = Depends(require_admin),
    db: AsyncSession = Depends(get_session),
) -> StatisticsResponse:
    """Rebuild one account's statistics now."""
    snapshot = await recompute_statistics(db, user_id)
    await db.commit()
    return to_response(user_id, snapshot, STATUS_FRESH)


@router.post("/admin/stats/process-pending", response_model=ProcessPendingResponse)
async def process_pending_endpoint(
    _admin: WebUser = Depends(require_admin),
    db: AsyncSession = Depends(get_session),
) -> ProcessPendingResponse:
    """Fold every unprocessed session now instead of waiting for the worker."""
    count = await process_pending_sessions(db)
    await db.commit()
    return ProcessPendingResponse(processed_sessions=count)
