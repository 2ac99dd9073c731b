"""Pydantic schemas for driver lookup and candidate resolution."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel


class AccountSummary(BaseModel):
    id: int
    display_name: str
    first_name: str
    last_name: str
    alias: str | None = None
    driver_name: str | None = None
    link_status: str


class CandidateResponse(BaseModel):
    account: AccountSummary
    confidence: str
    evidence: list[str]


class ResolveResponse(BaseModel):
    driver_name: str
    session_id: str | None = None
    candidates: list[CandidateResponse]


class DriverSearchItem(BaseModel):
    driver_name: str
    race_count: int
    last_race_at: datetime | None = None
    linked_user_id: int | None = None
    is_linked: bool


class DriverSearchResponse(BaseModel):
    query: str
    drivers: list[DriverSearchItem]


class SessionDriverItem(BaseModel):
    driver_name: str
    kart_number: int | None = None
    final_position: int | None = None
    best_time_ms: int | None = None
    total_laps: int
    is_linked: bool


class SessionDriversResponse(BaseModel):
    session_id: str
    drivers: list[SessionDriverItem]
