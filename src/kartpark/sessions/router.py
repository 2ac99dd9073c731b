"""Session ingestion, lookup and lap-capture endpoints."""

from __future__ import annotations

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Response
from sqlalchemy.ext.asyncio import AsyncSession

from kartpark.auth.dependencies import get_current_user, require_admin, require_timing
from kartpark.database import get_session
from kartpark.db.models import RaceSession, WebUser
from kartpark.redis_client import get_optional_redis
from kartpark.errors import NotFoundError
from kartpark.sessions.capture import is_capture_enabled, reset_capture, set_capture_enabled
from kartpark.sessions.schemas import (
    DriverHistoryEntry,
    DriverResultResponse,
    LapCaptureStatusResponse,
    LapCaptureToggleRequest,
    SessionDetailResponse,
    SessionIngestRequest,
    SessionIngestResponse,
    SessionSummaryResponse,
    SessionType,
)
from kartpark.sessions.service import (
    get_driver_history,
    get_session_by_external_id,
    list_recent_sessions,
    record_session,
)
from kartpark.stats.background import apply_session_after_commit
from kartpark.time_utils import as_utc

router = APIRouter(prefix="/api/v1", tags=["Sessions"])


def _summary(race_session: RaceSession) -> SessionSummaryResponse:
    return SessionSummaryResponse(
        session_id=race_session.session_id,
        session_name=race_session.session_name,
        session_date=as_utc(race_session.session_date),
        session_type=race_session.session_type,
        driver_count=len(race_session.results),
        processed=race_session.processed,
    )


# ── Ingestion ──


@router.post("/sessions", response_model=SessionIngestResponse)
async def ingest_session_endpoint(
    body: SessionIngestRequest,
    response: Response,
    background_tasks: BackgroundTasks,
    _ingester: WebUser = Depends(require_timing),
    db: AsyncSession = Depends(get_session),
    redis: object | None = Depends(get_optional_redis),
) -> SessionIngestResponse:
    """Record a session from the timing system. Idempotent on session_id."""
    if not await is_capture_enabled(redis):
        response.status_code = 202
        return SessionIngestResponse(
            recorded=False, created=False, session_id=body.session_id, reason="capture_disabled",
        )

    race_session, created = await record_session(
        db,
        session_id=body.session_id,
        session_name=body.session_name,
        session_date=body.session_date,
        session_type=body.session_type,
        results=[r.model_dump() for r in body.results],
    )
    await db.commit()

    if created:
        response.status_code = 201
        background_tasks.add_task(apply_session_after_commit, race_session.id)
    return SessionIngestResponse(
        recorded=True, created=created, session_id=race_session.session_id, race_session_id=race_session.id,
    )


# ── Lookup ──


@router.get("/sessions", response_model=list[SessionSummaryResponse])
async def list_sessions_endpoint(
    limit: int = Query(20, ge=1, le=100),
    session_type: SessionType | None = Query(None),
    _user: WebUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
) -> list[SessionSummaryResponse]:
    """Most recent sessions."""
    sessions = await list_recent_sessions(db, limit, session_type)
    return [_summary(s) for s in sessions]


@router.get("/sessions/{session_id}", response_model=SessionDetailResponse)
async def get_session_endpoint(
    session_id: str,
    _user: WebUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
) -> SessionDetailResponse:
    """Full session with every driver line and lap."""
    race_session = await get_session_by_external_id(db, session_id)
    if race_session is None:
        raise NotFoundError(f"Session '{session_id}' not found", session_id=session_id)
    return SessionDetailResponse(
        **_summary(race_session).model_dump(),
        results=[
            DriverResultResponse(
                driver_name=r.driver_name,
                kart_number=r.kart_number,
                final_position=r.final_position,
                best_time_ms=r.best_time_ms,
                last_time_ms=r.last_time_ms,
                total_laps=r.total_laps,
                laps=r.laps or [],
            )
            for r in race_session.results
        ],
    )


@router.get("/drivers/{driver_name}/history", response_model=list[DriverHistoryEntry])
async def driver_history_endpoint(
    driver_name: str,
    limit: int = Query(50, ge=1, le=200),
    _user: WebUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
) -> list[DriverHistoryEntry]:
    """A driver's sessions, newest first."""
    history = await get_driver_history(db, driver_name, limit)
    return [DriverHistoryEntry(**h) for h in history]


# ── Lap capture switch ──


@router.get("/admin/lap-capture", response_model=LapCaptureStatusResponse)
async def get_lap_capture_endpoint(
    _admin: WebUser = Depends(require_admin),
    redis: object | None = Depends(get_optional_redis),
) -> LapCaptureStatusResponse:
    """Current lap-capture state."""
    return LapCaptureStatusResponse(enabled=await is_capture_enabled(redis))


@router.post("/admin/lap-capture", response_model=LapCaptureStatusResponse)
async def set_lap_capture_endpoint(
    body: LapCaptureToggleRequest,
    _admin: WebUser = Depends(require_admin),
    redis: object | None = Depends(get_optional_redis),
) -> LapCaptureStatusResponse:
    """Pause or resume session recording for every instance."""
    if redis is None:
        raise HTTPException(status_code=503, detail="Lap capture store unavailable")
    previous = await set_capture_enabled(redis, body.enabled)
    return LapCaptureStatusResponse(enabled=body.enabled, previous_state=previous)


@router.delete("/admin/lap-capture", response_model=LapCaptureStatusResponse)
async def reset_lap_capture_endpoint(
    _admin: WebUser = Depends(require_admin),
    redis: object | None = Depends(get_optional_redis),
) -> LapCaptureStatusResponse:
    """Drop the override and return to the configured default."""
    if redis is None:
        raise HTTPException(status_code=503, detail="Lap capture store unavailable")
    return LapCaptureStatusResponse(enabled=await reset_capture(redis))
