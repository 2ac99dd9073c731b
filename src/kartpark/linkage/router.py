"""Linkage request endpoints: user submission and admin review."""

from __future__ import annotations

from fastapi import APIRouter, BackgroundTasks, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from kartpark.auth.dependencies import get_current_user, require_admin
from kartpark.database import get_session
from kartpark.db.models import LinkageRequest, WebUser
from kartpark.linkage.schemas import (
    ApproveRequest,
    CreateLinkageRequest,
    LinkageRequestListResponse,
    LinkageRequestResponse,
    LinkStatusResponse,
    PendingCountResponse,
    RejectRequest,
)
from kartpark.linkage.service import (
    approve_request,
    cancel_request,
    create_request,
    get_request,
    get_user_requests,
    list_requests,
    pending_count,
    reject_request,
    unlink_account,
)
from kartpark.stats.background import recompute_after_commit
from kartpark.time_utils import as_utc

router = APIRouter(prefix="/api/v1", tags=["Linkage"])


def _to_response(req: LinkageRequest) -> LinkageRequestResponse:
    return LinkageRequestResponse(
        id=req.id,
        web_user_id=req.web_user_id,
        searched_name=req.searched_name,
        selected_driver_name=req.selected_driver_name,
        selected_session_id=req.selected_session_id,
        status=req.status,
        reviewed_at=as_utc(req.reviewed_at),
        reviewed_by=req.reviewed_by,
        rejection_reason=req.rejection_reason,
        admin_notes=req.admin_notes,
        user_snapshot=req.user_snapshot or {},
        driver_snapshot=req.driver_snapshot or {},
        created_at=as_utc(req.created_at),
        updated_at=as_utc(req.updated_at),
    )


# ── User ──


@router.post("/linkage/requests", response_model=LinkageRequestResponse, status_code=201)
async def create_request_endpoint(
    body: CreateLinkageRequest,
    user: WebUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
) -> LinkageRequestResponse:
    """Ask to be linked to a driver name seen in a session."""
    req = await create_request(
        db, user.id, body.searched_name, body.selected_driver_name, body.selected_session_id,
    )
    await db.commit()
    return _to_response(req)


@router.get("/linkage/requests/me", response_model=list[LinkageRequestResponse])
async def my_requests_endpoint(
    user: WebUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
) -> list[LinkageRequestResponse]:
    """The caller's own requests, newest first."""
    return [_to_response(r) for r in await get_user_requests(db, user.id)]


@router.post("/linkage/requests/{request_id}/cancel", response_model=LinkageRequestResponse)
async def cancel_request_endpoint(
    request_id: int,
    user: WebUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
) -> LinkageRequestResponse:
    """Withdraw a pending request."""
    req = await cancel_request(db, request_id, user.id)
    await db.commit()
    return _to_response(req)


# ── Admin review ──


@router.get("/admin/linkage-requests", response_model=LinkageRequestListResponse)
async def list_requests_endpoint(
    status: str | None = Query(None),
    page: int = Query(1, ge=1),
    per_page: int = Query(20, ge=1, le=100),
    _admin: WebUser = Depends(require_admin),
    db: AsyncSession = Depends(get_session),
) -> LinkageRequestListResponse:
    """Review queue, oldest first."""
    requests, total = await list_requests(db, status, page, per_page)
    return LinkageRequestListResponse(
        requests=[_to_response(r) for r in requests], total=total, page=page, per_page=per_page,
    )


@router.get("/admin/linkage-requests/pending-count", response_model=PendingCountResponse)
async def pending_count_endpoint(
    _admin: WebUser = Depends(require_admin),
    db: AsyncSession = Depends(get_session),
) -> PendingCountResponse:
    return PendingCountResponse(pending=await pending_count(db))


@router.get("/admin/linkage-requests/{request_id}", response_model=LinkageRequestResponse)
async def get_request_endpoint(
    request_id: int,
    _admin: WebUser = Depends(require_admin),
    db: AsyncSession = Depends(get_session),
) -> LinkageRequestResponse:
    return _to_response(await get_request(db, request_id))


@router.post("/admin/linkage-requests/{request_id}/approve", response_model=LinkageRequestResponse)
async def approve_request_endpoint(
    request_id: int,
    body: ApproveRequest,
    background_tasks: BackgroundTasks,
    admin: WebUser = Depends(require_admin),
    db: AsyncSession = Depends(get_session),
) -> LinkageRequestResponse:
    """Approve and link. Statistics are rebuilt after the response."""
    req = await approve_request(db, request_id, admin.id, body.notes)
    await db.commit()
    background_tasks.add_task(recompute_after_commit, req.web_user_id)
    return _to_response(req)


@router.post("/admin/linkage-requests/{request_id}/reject", response_model=LinkageRequestResponse)
async def reject_request_endpoint(
    request_id: int,
    body: RejectRequest,
    admin: WebUser = Depends(require_admin),
    db: AsyncSession = Depends(get_session),
) -> LinkageRequestResponse:
    req = await reject_request(db, request_id, admin.id, body.reason, body.notes)
    await db.commit()
    return _to_response(req)


@router.post("/admin/users/{user_id}/unlink", response_model=LinkStatusResponse)
async def unlink_account_endpoint(
    user_id: int,
    admin: WebUser = Depends(require_admin),
    db: AsyncSession = Depends(get_session),
) -> LinkStatusResponse:
    """Clear an account's driver link and rebuild its statistics."""
    user = await unlink_account(db, user_id, admin.id)
    await db.commit()
    return LinkStatusResponse(
        user_id=user.id, driver_name=user.driver_name, link_status=user.link_status, linked_at=user.linked_at,
    )
