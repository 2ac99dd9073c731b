"""Squadron endpoints: membership, roster, points ledger and ranking."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from kartpark.auth.dependencies import get_current_user, require_admin, require_organizer
from kartpark.database import get_session
from kartpark.db.models import Squadron, SquadronInvitation, SquadronPointsHistory, WebUser
from kartpark.squadrons import ledger_service, membership_service
from kartpark.squadrons.schemas import (
    CreateSquadronRequest,
    InvitationResponse,
    InviteRequest,
    LedgerAuditResponse,
    MembershipResponse,
    PointsDeltaRequest,
    PointsEntryResponse,
    PointsHistoryResponse,
    PointsTotalResponse,
    RankingItem,
    RevertRequest,
    RosterMemberResponse,
    RosterResponse,
    SquadronListResponse,
    SquadronMemberResponse,
    SquadronResponse,
    TransferCaptaincyRequest,
    UpdateSquadronRequest,
)
from kartpark.stats.router import to_response as stats_response
from kartpark.time_utils import as_utc

router = APIRouter(prefix="/api/v1", tags=["Squadrons"])


# ── Helpers ──


async def _build_squadron_response(db: AsyncSession, squadron: Squadron, with_members: bool = True) -> SquadronResponse:
    members = []
    if with_members:
        members = [
            SquadronMemberResponse(
                user_id=user.id, display_name=user.display_name, role=m.role, joined_at=as_utc(m.joined_at),
            )
            for m, user in await membership_service.get_squadron_members(db, squadron.id)
        ]
    return SquadronResponse(
        id=squadron.id,
        name=squadron.name,
        description=squadron.description,
        recruitment_mode=squadron.recruitment_mode,
        primary_color=squadron.primary_color,
        secondary_color=squadron.secondary_color,
        division=squadron.division,
        captain_id=squadron.captain_id,
        member_count=squadron.member_count,
        fair_racing_average=squadron.fair_racing_average,
        total_points=squadron.total_points,
        is_active=squadron.is_active,
        created_at=as_utc(squadron.created_at),
        members=members,
    )


def _invitation_response(invitation: SquadronInvitation, squadron_name: str | None = None) -> InvitationResponse:
    return InvitationResponse(
        id=invitation.id,
        squadron_id=invitation.squadron_id,
        squadron_name=squadron_name,
        user_id=invitation.user_id,
        invited_by=invitation.invited_by,
        status=invitation.status,
        created_at=as_utc(invitation.created_at),
        responded_at=as_utc(invitation.responded_at),
    )


def _entry_response(entry: SquadronPointsHistory) -> PointsEntryResponse:
    return PointsEntryResponse(
        id=entry.id,
        squadron_id=entry.squadron_id,
        race_event_id=entry.race_event_id,
        points_change=entry.points_change,
        previous_total=entry.previous_total,
        new_total=entry.new_total,
        reason=entry.reason,
        change_type=entry.change_type,
        modified_by=entry.modified_by,
        metadata=entry.entry_metadata or {},
        created_at=as_utc(entry.created_at),
    )


# ── Collection-level routes (declared before /squadrons/{squadron_id}) ──


@router.get("/squadrons", response_model=SquadronListResponse)
async def list_squadrons_endpoint(
    page: int = Query(1, ge=1),
    per_page: int = Query(20, ge=1, le=100),
    include_inactive: bool = Query(False),
    db: AsyncSession = Depends(get_session),
) -> SquadronListResponse:
    """List squadrons (public)."""
    squadrons, total = await membership_service.list_squadrons(db, page, per_page, include_inactive)
    items = [await _build_squadron_response(db, s, with_members=False) for s in squadrons]
    return SquadronListResponse(squadrons=items, total=total, page=page, per_page=per_page)


@router.post("/squadrons", response_model=SquadronResponse, status_code=201)
async def create_squadron_endpoint(
    body: CreateSquadronRequest,
    user: WebUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
) -> SquadronResponse:
    """Create a squadron. The creator becomes captain."""
    squadron = await membership_service.create_squadron(
        db,
        user.id,
        body.name,
        description=body.description,
        recruitment_mode=body.recruitment_mode,
        primary_color=body.primary_color,
        secondary_color=body.secondary_color,
        division=body.division,
    )
    await db.commit()
    return await _build_squadron_response(db, squadron)


@router.get("/squadrons/ranking", response_model=list[RankingItem])
async def ranking_endpoint(
    include_inactive: bool = Query(False),
    db: AsyncSession = Depends(get_session),
) -> list[RankingItem]:
    """Squadron standings by ledger total (public)."""
    ranking = await ledger_service.compute_ranking(db, include_inactive)
    return [
        RankingItem(
            rank=r.rank,
            squadron_id=r.squadron.id,
            name=r.squadron.name,
            total_points=r.total_points,
            fair_racing_average=r.squadron.fair_racing_average,
            member_count=r.squadron.member_count,
            division=r.squadron.division,
            is_active=r.squadron.is_active,
        )
        for r in ranking
    ]


@router.get("/squadrons/me", response_model=MembershipResponse)
async def my_squadron_endpoint(
    user: WebUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
) -> MembershipResponse:
    """The caller's squadron, if any."""
    membership = await membership_service.get_user_membership(db, user.id)
    if membership is None:
        return MembershipResponse()
    squadron = await membership_service.require_squadron(db, membership.squadron_id)
    return MembershipResponse(squadron=await _build_squadron_response(db, squadron), role=membership.role)


@router.post("/squadrons/leave", response_model=SquadronResponse)
async def leave_squadron_endpoint(
    user: WebUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
) -> SquadronResponse:
    """Leave the caller's squadron."""
    squadron = await membership_service.leave(db, user.id)
    await db.commit()
    return await _build_squadron_response(db, squadron)


@router.get("/squadrons/invitations/me", response_model=list[InvitationResponse])
async def my_invitations_endpoint(
    user: WebUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
) -> list[InvitationResponse]:
    """Pending invitations for the caller."""
    rows = await membership_service.list_user_invitations(db, user.id)
    return [_invitation_response(inv, squadron.name) for inv, squadron in rows]


@router.post("/squadrons/invitations/{invitation_id}/accept", response_model=SquadronResponse)
async def accept_invitation_endpoint(
    invitation_id: int,
    user: WebUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
) -> SquadronResponse:
    member = await membership_service.accept_invite(db, invitation_id, user.id)
    await db.commit()
    squadron = await membership_service.require_squadron(db, member.squadron_id)
    return await _build_squadron_response(db, squadron)


@router.post("/squadrons/invitations/{invitation_id}/reject", response_model=InvitationResponse)
async def reject_invitation_endpoint(
    invitation_id: int,
    user: WebUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
) -> InvitationResponse:
    invitation = await membership_service.reject_invite(db, invitation_id, user.id)
    await db.commit()
    return _invitation_response(invitation)


@router.post("/squadrons/points/{entry_id}/revert", response_model=PointsEntryResponse, status_code=201)
async def revert_entry_endpoint(
    entry_id: int,
    body: RevertRequest,
    admin: WebUser = Depends(require_admin),
    db: AsyncSession = Depends(get_session),
) -> PointsEntryResponse:
    """Append an entry negating a previous one."""
    entry = await ledger_service.revert_entry(db, entry_id, admin.id, body.reason)
    await db.commit()
    return _entry_response(entry)


# ── Single squadron ──


@router.get("/squadrons/{squadron_id}", response_model=SquadronResponse)
async def get_squadron_endpoint(
    squadron_id: int,
    db: AsyncSession = Depends(get_session),
) -> SquadronResponse:
    """Squadron detail with members (public)."""
    squadron = await membership_service.require_squadron(db, squadron_id)
    return await _build_squadron_response(db, squadron)


@router.patch("/squadrons/{squadron_id}", response_model=SquadronResponse)
async def update_squadron_endpoint(
    squadron_id: int,
    body: UpdateSquadronRequest,
    user: WebUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
) -> SquadronResponse:
    """Update the squadron profile (captain only)."""
    squadron = await membership_service.update_squadron(
        db, squadron_id, user.id, **body.model_dump(exclude_none=True),
    )
    await db.commit()
    return await _build_squadron_response(db, squadron)


@router.get("/squadrons/{squadron_id}/roster", response_model=RosterResponse)
async def roster_endpoint(
    squadron_id: int,
    _user: WebUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
) -> RosterResponse:
    """Members with fair-racing score and racing statistics."""
    roster = await membership_service.get_roster(db, squadron_id)
    await db.commit()
    return RosterResponse(
        squadron_id=squadron_id,
        members=[
            RosterMemberResponse(
                user_id=entry.user.id,
                display_name=entry.user.display_name,
                role=entry.member.role,
                joined_at=as_utc(entry.member.joined_at),
                fair_racing_score=entry.fair_racing_score,
                statistics=stats_response(entry.user.id, entry.statistics, entry.statistics_status),
            )
            for entry in roster
        ],
    )


@router.post("/squadrons/{squadron_id}/join", response_model=SquadronResponse)
async def join_squadron_endpoint(
    squadron_id: int,
    user: WebUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
) -> SquadronResponse:
    """Join an open squadron."""
    await membership_service.join(db, user.id, squadron_id)
    await db.commit()
    squadron = await membership_service.require_squadron(db, squadron_id)
    return await _build_squadron_response(db, squadron)


@router.post("/squadrons/{squadron_id}/invitations", response_model=InvitationResponse, status_code=201)
async def invite_endpoint(
    squadron_id: int,
    body: InviteRequest,
    user: WebUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
) -> InvitationResponse:
    """Captain invites a user."""
    invitation = await membership_service.invite(db, user.id, squadron_id, body.user_id)
    await db.commit()
    return _invitation_response(invitation)


@router.delete("/squadrons/{squadron_id}/members/{user_id}", response_model=SquadronResponse)
async def remove_member_endpoint(
    squadron_id: int,
    user_id: int,
    user: WebUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
) -> SquadronResponse:
    """Captain (or platform admin) removes a member."""
    squadron = await membership_service.remove_member(
        db, user.id, squadron_id, user_id, as_admin=user.has_role("admin"),
    )
    await db.commit()
    return await _build_squadron_response(db, squadron)


@router.post("/squadrons/{squadron_id}/transfer", response_model=SquadronResponse)
async def transfer_captaincy_endpoint(
    squadron_id: int,
    body: TransferCaptaincyRequest,
    user: WebUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
) -> SquadronResponse:
    squadron = await membership_service.transfer_captaincy(db, user.id, squadron_id, body.new_captain_id)
    await db.commit()
    return await _build_squadron_response(db, squadron)


# ── Points ledger ──


@router.post("/squadrons/{squadron_id}/points", response_model=PointsTotalResponse)
async def apply_points_endpoint(
    squadron_id: int,
    body: PointsDeltaRequest,
    organizer: WebUser = Depends(require_organizer),
    db: AsyncSession = Depends(get_session),
) -> PointsTotalResponse:
    """Record a points change. Retries with the same key are no-ops."""
    total = await ledger_service.apply_delta(
        db,
        squadron_id,
        body.points_change,
        body.reason,
        body.change_type,
        organizer.id,
        race_event_id=body.race_event_id,
        metadata=body.metadata,
        idempotency_key=body.idempotency_key,
    )
    await db.commit()
    return PointsTotalResponse(squadron_id=squadron_id, total_points=total)


@router.get("/squadrons/{squadron_id}/points", response_model=PointsTotalResponse)
async def points_total_endpoint(
    squadron_id: int,
    db: AsyncSession = Depends(get_session),
) -> PointsTotalResponse:
    """Authoritative total from the ledger."""
    await membership_service.require_squadron(db, squadron_id)
    return PointsTotalResponse(squadron_id=squadron_id, total_points=await ledger_service.current_total(db, squadron_id))


@router.get("/squadrons/{squadron_id}/points/history", response_model=PointsHistoryResponse)
async def points_history_endpoint(
    squadron_id: int,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_session),
) -> PointsHistoryResponse:
    """Ledger entries, newest first."""
    entries, total = await ledger_service.get_history(db, squadron_id, limit, offset)
    return PointsHistoryResponse(
        squadron_id=squadron_id,
        entries=[_entry_response(e) for e in entries],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get("/squadrons/{squadron_id}/points/audit", response_model=LedgerAuditResponse)
async def points_audit_endpoint(
    squadron_id: int,
    _admin: WebUser = Depends(require_admin),
    db: AsyncSession = Depends(get_session),
) -> LedgerAuditResponse:
    """Check the ledger chain and the display cache."""
    audit = await ledger_service.verify_ledger(db, squadron_id)
    return LedgerAuditResponse(
        squadron_id=audit.squadron_id,
        consistent=audit.consistent,
        entry_count=audit.entry_count,
        ledger_total=audit.ledger_total,
        cached_total=audit.cached_total,
        last_new_total=audit.last_new_total,
        broken_entry_ids=audit.broken_entry_ids,
    )


@router.post("/squadrons/{squadron_id}/points/refresh-cache", response_model=PointsTotalResponse)
async def refresh_points_cache_endpoint(
    squadron_id: int,
    _admin: WebUser = Depends(require_admin),
    db: AsyncSession = Depends(get_session),
) -> PointsTotalResponse:
    """Reset the display total to the ledger sum."""
    total = await ledger_service.refresh_total_cache(db, squadron_id)
    await db.commit()
    return PointsTotalResponse(squadron_id=squadron_id, total_points=total)
