"""ORM models for the identity-linking and aggregation core.

Race sessions are written by the external timing ingester and are immutable
apart from ``processed``. Everything under user_statistics is derived and can
be rebuilt from race_sessions + the current web_users link.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from kartpark.db.base import Base, BigIntPK, JSONType

# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------

LINK_PENDING_FIRST_RACE = "pending_first_race"
LINK_LINKED = "linked"
LINK_VERIFICATION_FAILED = "verification_failed"


class WebUser(Base):
    """Registered account with its karting link."""

    __tablename__ = "web_users"
    __table_args__ = (
        Index("idx_web_users_driver_name_lower", func.lower(text("driver_name"))),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(String(320), unique=True, nullable=False)
    first_name: Mapped[str] = mapped_column(String(64), nullable=False)
    last_name: Mapped[str] = mapped_column(String(64), nullable=False)
    alias: Mapped[str | None] = mapped_column(String(64), nullable=True)
    roles: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=lambda: ["user"])
    account_status: Mapped[str] = mapped_column(String(16), nullable=False, default="active")

    # --- Karting link ---
    driver_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    link_status: Mapped[str] = mapped_column(String(24), nullable=False, default=LINK_PENDING_FIRST_RACE)
    linked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    @property
    def display_name(self) -> str:
        return self.alias or f"{self.first_name} {self.last_name}".strip()

    @property
    def is_linked(self) -> bool:
        return self.link_status == LINK_LINKED and bool(self.driver_name)

    def has_role(self, *roles: str) -> bool:
        return any(r in (self.roles or []) for r in roles)


# ---------------------------------------------------------------------------
# Session store
# ---------------------------------------------------------------------------

SESSION_TYPES = ("practice", "qualifying", "race", "other")


class RaceSession(Base):
    """A timing-system session. Append-only; only ``processed`` changes."""

    __tablename__ = "race_sessions"
    __table_args__ = (
        Index("idx_race_sessions_date", "session_date"),
        Index("idx_race_sessions_unprocessed", "processed", "id"),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    session_id: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    session_name: Mapped[str] = mapped_column(String(200), nullable=False)
    session_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    session_type: Mapped[str] = mapped_column(String(16), nullable=False, default="other")
    processed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    results: Mapped[list[DriverResult]] = relationship(
        "DriverResult",
        back_populates="race_session",
        order_by="DriverResult.ordinal",
        cascade="all, delete-orphan",
        lazy="selectin",
    )


class DriverResult(Base):
    """One driver's line in a session. ``driver_name`` is free text, not a key."""

    __tablename__ = "driver_results"
    __table_args__ = (
        UniqueConstraint("race_session_id", "ordinal", name="driver_results_session_ordinal_key"),
        Index("idx_driver_results_name_lower", func.lower(text("driver_name"))),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    race_session_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("race_sessions.id", ondelete="CASCADE"), nullable=False
    )
    ordinal: Mapped[int] = mapped_column(Integer, nullable=False)
    driver_name: Mapped[str] = mapped_column(String(128), nullable=False)
    kart_number: Mapped[int | None] = mapped_column(Integer, nullable=True)
    final_position: Mapped[int | None] = mapped_column(Integer, nullable=True)
    best_time_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    last_time_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    total_laps: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    laps: Mapped[list[dict[str, Any]]] = mapped_column(JSONType, nullable=False, default=list)

    race_session: Mapped[RaceSession] = relationship("RaceSession", back_populates="results")


# ---------------------------------------------------------------------------
# Linkage requests
# ---------------------------------------------------------------------------

REQUEST_PENDING = "pending"
REQUEST_APPROVED = "approved"
REQUEST_REJECTED = "rejected"
REQUEST_CANCELLED = "cancelled"


class LinkageRequest(Base):
    """User-submitted proposal to link an account to a driver name."""

    __tablename__ = "linkage_requests"
    __table_args__ = (
        Index(
            "uq_linkage_requests_one_pending_per_user",
            "web_user_id",
            unique=True,
            postgresql_where=text("status = 'pending'"),
            sqlite_where=text("status = 'pending'"),
        ),
        Index("idx_linkage_requests_status_created", "status", "created_at"),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    web_user_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("web_users.id", ondelete="CASCADE"), nullable=False
    )
    searched_name: Mapped[str] = mapped_column(String(128), nullable=False)
    selected_driver_name: Mapped[str] = mapped_column(String(128), nullable=False)
    selected_session_id: Mapped[str] = mapped_column(String(128), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=REQUEST_PENDING)
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    reviewed_by: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("web_users.id"), nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    admin_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    user_snapshot: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    driver_snapshot: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    created_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    user: Mapped[WebUser] = relationship("WebUser", foreign_keys=[web_user_id])


# ---------------------------------------------------------------------------
# Derived statistics
# ---------------------------------------------------------------------------


class UserStatistics(Base):
    """Materialized per-user racing statistics. Never authoritative."""

    __tablename__ = "user_statistics"

    user_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("web_users.id", ondelete="CASCADE"), primary_key=True
    )
    driver_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    total_races: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    timed_races: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    best_time_ms: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    average_time_ms: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    time_sum_ms: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    podium_finishes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    first_places: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    second_places: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    third_places: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    best_position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_laps: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    favorite_kart: Mapped[int | None] = mapped_column(Integer, nullable=True)
    kart_counts: Mapped[dict[str, int]] = mapped_column(JSONType, nullable=False, default=dict)
    first_race_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_race_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    recent_sessions: Mapped[list[dict[str, Any]]] = mapped_column(JSONType, nullable=False, default=list)
    monthly_stats: Mapped[list[dict[str, int]]] = mapped_column(JSONType, nullable=False, default=list)
    covered_through_id: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    is_stale: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    stale_since: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    computed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


# ---------------------------------------------------------------------------
# Squadrons
# ---------------------------------------------------------------------------


class Squadron(Base):
    """A team of 1-4 accounts. Inactive squadrons keep their ledger."""

    __tablename__ = "squadrons"
    __table_args__ = (
        Index("idx_squadrons_name_lower", func.lower(text("name")), unique=True),
        CheckConstraint("member_count >= 0 AND member_count <= 4", name="ck_squadrons_member_count_range"),
        CheckConstraint(
            "(is_active AND member_count >= 1) OR (NOT is_active AND member_count = 0)",
            name="ck_squadrons_active_has_members",
        ),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(30), nullable=False)
    description: Mapped[str] = mapped_column(String(500), nullable=False, default="")
    primary_color: Mapped[str] = mapped_column(String(7), nullable=False, default="#00D4FF")
    secondary_color: Mapped[str] = mapped_column(String(7), nullable=False, default="#0057B8")
    recruitment_mode: Mapped[str] = mapped_column(String(16), nullable=False, default="open")
    division: Mapped[str] = mapped_column(String(16), nullable=False, default="Open")
    captain_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("web_users.id"), nullable=True)
    member_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    fair_racing_average: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_points: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class SquadronMember(Base):
    """Squadron membership. One account can only be in one squadron."""

    __tablename__ = "squadron_members"
    __table_args__ = (
        UniqueConstraint("squadron_id", "user_id", name="squadron_members_squadron_user_key"),
        UniqueConstraint("user_id", name="squadron_members_user_unique"),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    squadron_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("squadrons.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("web_users.id", ondelete="CASCADE"), nullable=False
    )
    role: Mapped[str] = mapped_column(String(16), nullable=False, default="member")
    joined_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class SquadronInvitation(Base):
    """Captain-issued invitation to join a squadron."""

    __tablename__ = "squadron_invitations"
    __table_args__ = (
        Index(
            "uq_squadron_invitations_one_pending",
            "squadron_id",
            "user_id",
            unique=True,
            postgresql_where=text("status = 'pending'"),
            sqlite_where=text("status = 'pending'"),
        ),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    squadron_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("squadrons.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("web_users.id", ondelete="CASCADE"), nullable=False
    )
    invited_by: Mapped[int] = mapped_column(BigInteger, ForeignKey("web_users.id"), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    created_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    responded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class FairRacingScore(Base):
    """Per-account behavioural rating, 0-100."""

    __tablename__ = "fair_racing_scores"

    user_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("web_users.id", ondelete="CASCADE"), primary_key=True
    )
    current_score: Mapped[int] = mapped_column(Integer, nullable=False, default=85)
    initial_score: Mapped[int] = mapped_column(Integer, nullable=False, default=85)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


CHANGE_TYPES = ("race_event", "manual_adjustment", "penalty", "bonus", "revert")


class SquadronPointsHistory(Base):
    """Append-only squadron points ledger with idempotency key."""

    __tablename__ = "squadron_points_history"
    __table_args__ = (
        Index("idx_points_history_squadron_id", "squadron_id", "id"),
        Index("idx_points_history_race_event", "race_event_id"),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    squadron_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("squadrons.id", ondelete="CASCADE"), nullable=False
    )
    race_event_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    points_change: Mapped[int] = mapped_column(Integer, nullable=False)
    previous_total: Mapped[int] = mapped_column(Integer, nullable=False)
    new_total: Mapped[int] = mapped_column(Integer, nullable=False)
    reason: Mapped[str] = mapped_column(String(500), nullable=False)
    change_type: Mapped[str] = mapped_column(String(24), nullable=False)
    modified_by: Mapped[int] = mapped_column(BigInteger, ForeignKey("web_users.id"), nullable=False)
    entry_metadata: Mapped[dict[str, Any]] = mapped_column("metadata", JSONType, nullable=False, default=dict)
    idempotency_key: Mapped[str | None] = mapped_column(String(256), unique=True, nullable=True)
    created_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
