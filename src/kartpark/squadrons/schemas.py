"""Pydantic schemas for squadron endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field, StrictInt

from kartpark.stats.schemas import StatisticsResponse

RecruitmentMode = Literal["open", "invite-only"]
ChangeType = Literal["race_event", "manual_adjustment", "penalty", "bonus"]


# --- Squadron ---


class CreateSquadronRequest(BaseModel):
    name: str = Field(..., min_length=2, max_length=30)
    description: str = Field("", max_length=500)
    recruitment_mode: RecruitmentMode = "open"
    primary_color: str = Field("#00D4FF", pattern=r"^#[0-9A-Fa-f]{6}$")
    secondary_color: str = Field("#0057B8", pattern=r"^#[0-9A-Fa-f]{6}$")
    division: str = "Open"


class UpdateSquadronRequest(BaseModel):
    name: str | None = Field(None, min_length=2, max_length=30)
    description: str | None = Field(None, max_length=500)
    recruitment_mode: RecruitmentMode | None = None
    primary_color: str | None = Field(None, pattern=r"^#[0-9A-Fa-f]{6}$")
    secondary_color: str | None = Field(None, pattern=r"^#[0-9A-Fa-f]{6}$")
    division: str | None = None


class SquadronMemberResponse(BaseModel):
    user_id: int
    display_name: str
    role: str
    joined_at: datetime | None = None


class SquadronResponse(BaseModel):
    id: int
    name: str
    description: str
    recruitment_mode: str
    primary_color: str
    secondary_color: str
    division: str
    captain_id: int | None = None
    member_count: int
    fair_racing_average: int
    total_points: int
    is_active: bool
    created_at: datetime | None = None
    members: list[SquadronMemberResponse] = []


class SquadronListResponse(BaseModel):
    squadrons: list[SquadronResponse]
    total: int
    page: int
    per_page: int


class MembershipResponse(BaseModel):
    squadron: SquadronResponse | None = None
    role: str | None = None


class RosterMemberResponse(SquadronMemberResponse):
    fair_racing_score: int
    statistics: StatisticsResponse


class RosterResponse(BaseModel):
    squadron_id: int
    members: list[RosterMemberResponse]


# --- Invitations / membership actions ---


class InviteRequest(BaseModel):
    user_id: int


class InvitationResponse(BaseModel):
    id: int
    squadron_id: int
    squadron_name: str | None = None
    user_id: int
    invited_by: int
    status: str
    created_at: datetime | None = None
    responded_at: datetime | None = None


class TransferCaptaincyRequest(BaseModel):
    new_captain_id: int


# --- Points ledger ---


class PointsDeltaRequest(BaseModel):
    points_change: StrictInt
    reason: str = Field(..., max_length=500)
    change_type: ChangeType
    race_event_id: str | None = Field(None, max_length=64)
    metadata: dict[str, Any] = {}
    idempotency_key: str | None = Field(None, max_length=256)


class PointsTotalResponse(BaseModel):
    squadron_id: int
    total_points: int


class RevertRequest(BaseModel):
    reason: str | None = Field(None, max_length=500)


class PointsEntryResponse(BaseModel):
    id: int
    squadron_id: int
    race_event_id: str | None = None
    points_change: int
    previous_total: int
    new_total: int
    reason: str
    change_type: str
    modified_by: int
    metadata: dict[str, Any] = {}
    created_at: datetime | None = None


class PointsHistoryResponse(BaseModel):
    squadron_id: int
    entries: list[PointsEntryResponse]
    total: int
    limit: int
    offset: int


class RankingItem(BaseModel):
    rank: int
    squadron_id: int
    name: str
    total_points: int
    fair_racing_average: int
    member_count: int
    division: str
    is_active: bool


class LedgerAuditResponse(BaseModel):
    squadron_id: int
    consistent: bool
    entry_count: int
    ledger_total: int
    cached_total: int
    last_new_total: int
    broken_entry_ids: list[int]
