"""Squadron membership business logic.

Rules:
- Max 4 members per squadron (hard limit, also a storage check)
- One squadron per user (unique membership row per user)
- Open squadrons can be joined directly; invite-only ones need an invitation
- Only the captain invites, removes and transfers captaincy
- The captain cannot leave while other members remain
- Last member leaving deactivates the squadron; its ledger is kept
- Admin removal of a captain promotes the longest-serving member
- fair_racing_average is recomputed on every membership change
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from kartpark.db.models import FairRacingScore, Squadron, SquadronInvitation, SquadronMember, WebUser
from kartpark.errors import (
    AlreadyInSquadronError,
    CaptainMustTransferFirstError,
    DuplicateInvitationError,
    NotFoundError,
    PermissionDeniedError,
    RecruitmentClosedError,
    RequestAlreadyResolvedError,
    SquadronFullError,
    SquadronInactiveError,
    SquadronNameTakenError,
    ValidationError,
)
from kartpark.stats.aggregator import StatisticsSnapshot, half_up_mean
from kartpark.stats.service import get_statistics
from kartpark.time_utils import utcnow

logger = logging.getLogger(__name__)

MAX_MEMBERS = 4
INITIAL_FAIR_RACING_SCORE = 85
RECRUITMENT_MODES = ("open", "invite-only")
DIVISIONS = ("Open", "Elite", "Masters", "Pro")
ROLE_CAPTAIN = "captain"
ROLE_MEMBER = "member"

_COLOR_RE = re.compile(r"^#[0-9A-Fa-f]{6}$")


@dataclass
class RosterEntry:
    member: SquadronMember
    user: WebUser
    fair_racing_score: int
    statistics: StatisticsSnapshot
    statistics_status: str


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


async def get_squadron(db: AsyncSession, squadron_id: int) -> Squadron | None:
    """Get a squadron by ID."""
    return await db.get(Squadron, squadron_id)


async def require_squadron(db: AsyncSession, squadron_id: int) -> Squadron:
    squadron = await get_squadron(db, squadron_id)
    if squadron is None:
        raise NotFoundError(f"Squadron {squadron_id} not found", squadron_id=squadron_id)
    return squadron


async def get_user_membership(db: AsyncSession, user_id: int) -> SquadronMember | None:
    """Get a user's squadron membership (if any)."""
    result = await db.execute(select(SquadronMember).where(SquadronMember.user_id == user_id))
    return result.scalar_one_or_none()


async def get_squadron_members(db: AsyncSession, squadron_id: int) -> list[tuple[SquadronMember, WebUser]]:
    """Members with user info, longest-serving first."""
    result = await db.execute(
        select(SquadronMember, WebUser)
        .join(WebUser, SquadronMember.user_id == WebUser.id)
        .where(SquadronMember.squadron_id == squadron_id)
        .order_by(SquadronMember.joined_at.asc(), SquadronMember.id.asc())
    )
    return [(row.SquadronMember, row.WebUser) for row in result]


async def list_squadrons(
    db: AsyncSession,
    page: int = 1,
    per_page: int = 20,
    include_inactive: bool = False,
) -> tuple[list[Squadron], int]:
    """List squadrons by name (paginated)."""
    count_query = select(func.count()).select_from(Squadron)
    query = select(Squadron)
    if not include_inactive:
        count_query = count_query.where(Squadron.is_active.is_(True))
        query = query.where(Squadron.is_active.is_(True))
    total = (await db.execute(count_query)).scalar_one()
    result = await db.execute(
        query.order_by(func.lower(Squadron.name).asc(), Squadron.id.asc())
        .offset((page - 1) * per_page)
        .limit(per_page)
    )
    return list(result.scalars().all()), int(total)


async def list_user_invitations(db: AsyncSession, user_id: int) -> list[tuple[SquadronInvitation, Squadron]]:
    """Pending invitations addressed to a user."""
    result = await db.execute(
        select(SquadronInvitation, Squadron)
        .join(Squadron, SquadronInvitation.squadron_id == Squadron.id)
        .where(SquadronInvitation.user_id == user_id, SquadronInvitation.status == "pending")
        .order_by(SquadronInvitation.created_at.desc(), SquadronInvitation.id.desc())
    )
    return [(row.SquadronInvitation, row.Squadron) for row in result]


async def get_roster(db: AsyncSession, squadron_id: int) -> list[RosterEntry]:
    """Members with their fair-racing score and statistics snapshot."""
    await require_squadron(db, squadron_id)
    scores = await _member_scores(db, squadron_id)
    roster = []
    for member, user in await get_squadron_members(db, squadron_id):
        snapshot, status = await get_statistics(db, user.id)
        roster.append(
            RosterEntry(
                member=member,
                user=user,
                fair_racing_score=scores.get(user.id, INITIAL_FAIR_RACING_SCORE),
                statistics=snapshot,
                statistics_status=status,
            )
        )
    return roster


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


async def _lock_squadron(db: AsyncSession, squadron_id: int) -> Squadron:
    result = await db.execute(select(Squadron).where(Squadron.id == squadron_id).with_for_update())
    squadron = result.scalar_one_or_none()
    if squadron is None:
        raise NotFoundError(f"Squadron {squadron_id} not found", squadron_id=squadron_id)
    return squadron


async def _require_user(db: AsyncSession, user_id: int) -> WebUser:
    user = await db.get(WebUser, user_id)
    if user is None:
        raise NotFoundError(f"User {user_id} not found", user_id=user_id)
    return user


async def _ensure_not_member(db: AsyncSession, user_id: int) -> None:
    membership = await get_user_membership(db, user_id)
    if membership is not None:
        raise AlreadyInSquadronError(
            "User is already a member of a squadron. Leave it first.",
            user_id=user_id,
            squadron_id=membership.squadron_id,
        )


async def _ensure_fair_score(db: AsyncSession, user_id: int) -> None:
    if await db.get(FairRacingScore, user_id) is None:
        db.add(
            FairRacingScore(
                user_id=user_id,
                current_score=INITIAL_FAIR_RACING_SCORE,
                initial_score=INITIAL_FAIR_RACING_SCORE,
                updated_at=utcnow(),
            )
        )


async def _member_scores(db: AsyncSession, squadron_id: int) -> dict[int, int]:
    result = await db.execute(
        select(SquadronMember.user_id, FairRacingScore.current_score)
        .outerjoin(FairRacingScore, FairRacingScore.user_id == SquadronMember.user_id)
        .where(SquadronMember.squadron_id == squadron_id)
    )
    return {
        int(user_id): INITIAL_FAIR_RACING_SCORE if score is None else int(score)
        for user_id, score in result
    }


async def recompute_fair_racing_average(db: AsyncSession, squadron: Squadron) -> int:
    """Half-up rounded mean of current members' scores (0 with no members)."""
    await db.flush()
    scores = list((await _member_scores(db, squadron.id)).values())
    squadron.fair_racing_average = half_up_mean(sum(scores), len(scores))
    return squadron.fair_racing_average


async def _add_member(db: AsyncSession, squadron: Squadron, user_id: int, role: str) -> SquadronMember:
    member = SquadronMember(
        squadron_id=squadron.id,
        user_id=user_id,
        role=role,
        joined_at=utcnow(),
    )
    db.add(member)
    await _ensure_fair_score(db, user_id)
    try:
        await db.flush()
    except IntegrityError as e:
        # Concurrent join elsewhere claimed the user first.
        await db.rollback()
        raise AlreadyInSquadronError(
            "User is already a member of a squadron. Leave it first.", user_id=user_id,
        ) from e
    return member


def _deactivate(squadron: Squadron) -> None:
    squadron.is_active = False
    squadron.member_count = 0
    squadron.fair_racing_average = 0
    squadron.captain_id = None


async def _longest_serving(db: AsyncSession, squadron_id: int, exclude_user_id: int) -> SquadronMember:
    result = await db.execute(
        select(SquadronMember)
        .where(
            SquadronMember.squadron_id == squadron_id,
            SquadronMember.user_id != exclude_user_id,
        )
        .order_by(SquadronMember.joined_at.asc(), SquadronMember.id.asc())
        .limit(1)
    )
    return result.scalar_one()


def _require_captain(squadron: Squadron, user_id: int, action: str) -> None:
    if squadron.captain_id != user_id:
        raise PermissionDeniedError(
            f"Only the squadron captain can {action}", squadron_id=squadron.id, user_id=user_id,
        )


def _require_joinable(squadron: Squadron) -> None:
    if not squadron.is_active:
        raise SquadronInactiveError("This squadron is no longer active", squadron_id=squadron.id)
    if squadron.member_count >= MAX_MEMBERS:
        raise SquadronFullError(
            f"This squadron is full ({MAX_MEMBERS} members maximum)", squadron_id=squadron.id,
        )


def _validate_profile(
    name: str | None = None,
    recruitment_mode: str | None = None,
    primary_color: str | None = None,
    secondary_color: str | None = None,
    division: str | None = None,
    description: str | None = None,
) -> None:
    if name is not None and not 2 <= len(name) <= 30:
        raise ValidationError("Squadron name must be between 2 and 30 characters")
    if recruitment_mode is not None and recruitment_mode not in RECRUITMENT_MODES:
        raise ValidationError(f"Unknown recruitment mode '{recruitment_mode}'")
    for color in (primary_color, secondary_color):
        if color is not None and not _COLOR_RE.match(color):
            raise ValidationError(f"Invalid colour '{color}'")
    if division is not None and division not in DIVISIONS:
        raise ValidationError(f"Unknown division '{division}'")
    if description is not None and len(description) > 500:
        raise ValidationError("Description exceeds 500 characters")


async def _ensure_name_free(db: AsyncSession, name: str, exclude_id: int | None = None) -> None:
    query = select(Squadron.id).where(func.lower(Squadron.name) == name.lower())
    if exclude_id is not None:
        query = query.where(Squadron.id != exclude_id)
    if (await db.execute(query)).first() is not None:
        raise SquadronNameTakenError("A squadron with this name already exists", name=name)


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------


async def create_squadron(
    db: AsyncSession,
    captain_id: int,
    name: str,
    description: str = "",
    recruitment_mode: str = "open",
    primary_color: str = "#00D4FF",
    secondary_color: str = "#0057B8",
    division: str = "Open",
) -> Squadron:
    """Create a new squadron. The creator becomes captain."""
    name = " ".join((name or "").split())
    _validate_profile(name, recruitment_mode, primary_color, secondary_color, division, description)
    await _require_user(db, captain_id)
    await _ensure_not_member(db, captain_id)
    await _ensure_name_free(db, name)

    now = utcnow()
    squadron = Squadron(
        name=name,
        description=description or "",
        recruitment_mode=recruitment_mode,
        primary_color=primary_color,
        secondary_color=secondary_color,
        division=division,
        captain_id=captain_id,
        member_count=1,
        fair_racing_average=0,
        total_points=0,
        is_active=True,
        created_at=now,
        updated_at=now,
    )
    db.add(squadron)
    try:
        await db.flush()
    except IntegrityError as e:
        await db.rollback()
        raise SquadronNameTakenError("A squadron with this name already exists", name=name) from e

    await _add_member(db, squadron, captain_id, ROLE_CAPTAIN)
    await recompute_fair_racing_average(db, squadron)
    await db.flush()
    logger.info("Squadron created: %s (id=%d, captain=%d)", name, squadron.id, captain_id)
    return squadron


async def update_squadron(
    db: AsyncSession,
    squadron_id: int,
    captain_id: int,
    **changes: Any,  # noqa: ANN401
) -> Squadron:
    """Update squadron profile fields (captain only)."""
    squadron = await _lock_squadron(db, squadron_id)
    _require_captain(squadron, captain_id, "edit the squadron")
    fields = {k: v for k, v in changes.items() if v is not None}
    if "name" in fields:
        fields["name"] = " ".join(fields["name"].split())
    _validate_profile(**fields)
    if "name" in fields:
        await _ensure_name_free(db, fields["name"], exclude_id=squadron_id)
    for key, value in fields.items():
        setattr(squadron, key, value)
    squadron.updated_at = utcnow()
    await db.flush()
    return squadron


async def join(db: AsyncSession, user_id: int, squadron_id: int) -> SquadronMember:
    """Join an open squadron directly."""
    await _require_user(db, user_id)
    squadron = await _lock_squadron(db, squadron_id)
    _require_joinable(squadron)
    if squadron.recruitment_mode != "open":
        raise RecruitmentClosedError("This squadron only accepts invited members", squadron_id=squadron_id)
    await _ensure_not_member(db, user_id)

    member = await _add_member(db, squadron, user_id, ROLE_MEMBER)
    squadron.member_count += 1
    squadron.updated_at = utcnow()
    await _close_invitations(db, user_id, accepted_squadron_id=squadron_id)
    await recompute_fair_racing_average(db, squadron)
    await db.flush()
    logger.info("User %d joined squadron %d", user_id, squadron_id)
    return member


async def leave(db: AsyncSession, user_id: int) -> Squadron:
    """Leave the user's current squadron."""
    membership = await get_user_membership(db, user_id)
    if membership is None:
        raise NotFoundError("You are not in a squadron", user_id=user_id)
    squadron = await _lock_squadron(db, membership.squadron_id)

    if squadron.member_count <= 1:
        _deactivate(squadron)
        await db.delete(membership)
        logger.info("Squadron %d deactivated: last member %d left", squadron.id, user_id)
    elif membership.role == ROLE_CAPTAIN:
        raise CaptainMustTransferFirstError(
            "Transfer captaincy before leaving the squadron", squadron_id=squadron.id,
        )
    else:
        await db.delete(membership)
        squadron.member_count -= 1
        await recompute_fair_racing_average(db, squadron)

    squadron.updated_at = utcnow()
    await db.flush()
    logger.info("User %d left squadron %d", user_id, squadron.id)
    return squadron


async def invite(db: AsyncSession, captain_id: int, squadron_id: int, user_id: int) -> SquadronInvitation:
    """Captain invites a user who is not in any squadron."""
    squadron = await _lock_squadron(db, squadron_id)
    _require_captain(squadron, captain_id, "invite members")
    _require_joinable(squadron)
    await _require_user(db, user_id)
    await _ensure_not_member(db, user_id)

    existing = await db.execute(
        select(SquadronInvitation.id).where(
            SquadronInvitation.squadron_id == squadron_id,
            SquadronInvitation.user_id == user_id,
            SquadronInvitation.status == "pending",
        )
    )
    if existing.first() is not None:
        raise DuplicateInvitationError(
            "This user already has a pending invitation", squadron_id=squadron_id, user_id=user_id,
        )

    invitation = SquadronInvitation(
        squadron_id=squadron_id,
        user_id=user_id,
        invited_by=captain_id,
        status="pending",
        created_at=utcnow(),
    )
    db.add(invitation)
    await db.flush()
    logger.info("Squadron %d invited user %d (invitation=%d)", squadron_id, user_id, invitation.id)
    return invitation


async def _get_own_pending_invitation(db: AsyncSession, invitation_id: int, user_id: int) -> SquadronInvitation:
    invitation = await db.get(SquadronInvitation, invitation_id)
    if invitation is None:
        raise NotFoundError(f"Invitation {invitation_id} not found", invitation_id=invitation_id)
    if invitation.user_id != user_id:
        raise PermissionDeniedError("This invitation is addressed to another user", invitation_id=invitation_id)
    if invitation.status != "pending":
        raise RequestAlreadyResolvedError(
            f"Invitation {invitation_id} is already {invitation.status}",
            invitation_id=invitation_id,
            status=invitation.status,
        )
    return invitation


async def _close_invitations(db: AsyncSession, user_id: int, accepted_squadron_id: int) -> None:
    """Mark the user's other pending invitations as cancelled, this squadron's as accepted."""
    result = await db.execute(
        select(SquadronInvitation).where(
            SquadronInvitation.user_id == user_id,
            SquadronInvitation.status == "pending",
        )
    )
    now = utcnow()
    for invitation in result.scalars().all():
        invitation.status = "accepted" if invitation.squadron_id == accepted_squadron_id else "cancelled"
        invitation.responded_at = now


async def accept_invite(db: AsyncSession, invitation_id: int, user_id: int) -> SquadronMember:
    """Accept an invitation and join its squadron."""
    invitation = await _get_own_pending_invitation(db, invitation_id, user_id)
    squadron = await _lock_squadron(db, invitation.squadron_id)
    _require_joinable(squadron)
    await _ensure_not_member(db, user_id)

    member = await _add_member(db, squadron, user_id, ROLE_MEMBER)
    squadron.member_count += 1
    squadron.updated_at = utcnow()
    await _close_invitations(db, user_id, accepted_squadron_id=squadron.id)
    await recompute_fair_racing_average(db, squadron)
    await db.flush()
    logger.info("User %d accepted invitation %d to squadron %d", user_id, invitation_id, squadron.id)
    return member


async def reject_invite(db: AsyncSession, invitation_id: int, user_id: int) -> SquadronInvitation:
    invitation = await _get_own_pending_invitation(db, invitation_id, user_id)
    invitation.status = "rejected"
    invitation.responded_at = utcnow()
    await db.flush()
    logger.info("User %d rejected invitation %d", user_id, invitation_id)
    return invitation


async def remove_member(
    db: AsyncSession,
    actor_id: int,
    squadron_id: int,
    target_user_id: int,
    *,
    as_admin: bool = False,
) -> Squadron:
    """Remove a member. Captains remove others; platform admins may remove anyone."""
    squadron = await _lock_squadron(db, squadron_id)
    if not as_admin:
        _require_captain(squadron, actor_id, "remove members")
        if actor_id == target_user_id:
            raise ValidationError("Use the leave endpoint to leave the squadron")

    result = await db.execute(
        select(SquadronMember).where(
            SquadronMember.squadron_id == squadron_id,
            SquadronMember.user_id == target_user_id,
        )
    )
    target = result.scalar_one_or_none()
    if target is None:
        raise NotFoundError("User is not a member of this squadron", squadron_id=squadron_id, user_id=target_user_id)

    if squadron.member_count <= 1:
        _deactivate(squadron)
        await db.delete(target)
        logger.info("Squadron %d deactivated: last member %d removed", squadron_id, target_user_id)
    else:
        if target.role == ROLE_CAPTAIN:
            successor = await _longest_serving(db, squadron_id, exclude_user_id=target_user_id)
            successor.role = ROLE_CAPTAIN
            squadron.captain_id = successor.user_id
            logger.info("Squadron %d captaincy passed to %d", squadron_id, successor.user_id)
        await db.delete(target)
        squadron.member_count -= 1
        await recompute_fair_racing_average(db, squadron)

    squadron.updated_at = utcnow()
    await db.flush()
    logger.info("User %d removed from squadron %d by %d", target_user_id, squadron_id, actor_id)
    return squadron


async def transfer_captaincy(
    db: AsyncSession,
    captain_id: int,
    squadron_id: int,
    new_captain_id: int,
) -> Squadron:
    """Hand the captaincy to another member."""
    squadron = await _lock_squadron(db, squadron_id)
    _require_captain(squadron, captain_id, "transfer captaincy")
    if new_captain_id == captain_id:
        raise ValidationError("You are already the captain")

    members = {m.user_id: m for m, _ in await get_squadron_members(db, squadron_id)}
    if new_captain_id not in members:
        raise NotFoundError("User is not a member of this squadron", squadron_id=squadron_id, user_id=new_captain_id)

    members[captain_id].role = ROLE_MEMBER
    members[new_captain_id].role = ROLE_CAPTAIN
    squadron.captain_id = new_captain_id
    squadron.updated_at = utcnow()
    await db.flush()
    logger.info("Squadron %d captaincy transferred %d -> %d", squadron_id, captain_id, new_captain_id)
    return squadron
