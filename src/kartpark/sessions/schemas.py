"""Pydantic schemas for session ingestion and lookup."""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

SessionType = Literal["practice", "qualifying", "race", "other"]


# --- Ingestion ---


class LapIn(BaseModel):
    lap_number: int = Field(..., ge=1)
    time_ms: int
    position: int | None = None


class DriverResultIn(BaseModel):
    driver_name: str = Field(..., min_length=1, max_length=128)
    kart_number: int | None = None
    final_position: int | None = None
    best_time_ms: int | None = None
    last_time_ms: int | None = None
    total_laps: int = Field(0, ge=0)
    laps: list[LapIn] = []


class SessionIngestRequest(BaseModel):
    session_id: str = Field(..., min_length=1, max_length=128)
    session_name: str = Field(..., min_length=1, max_length=200)
    session_date: datetime
    session_type: SessionType = "other"
    results: list[DriverResultIn] = Field(..., min_length=1)


class SessionIngestResponse(BaseModel):
    recorded: bool
    created: bool
    session_id: str
    race_session_id: int | None = None
    reason: str | None = None


# --- Lookup ---


class LapResponse(BaseModel):
    lap_number: int
    time_ms: int
    position: int | None = None


class DriverResultResponse(BaseModel):
    driver_name: str
    kart_number: int | None = None
    final_position: int | None = None
    best_time_ms: int | None = None
    last_time_ms: int | None = None
    total_laps: int
    laps: list[LapResponse] = []


class SessionSummaryResponse(BaseModel):
    session_id: str
    session_name: str
    session_date: datetime
    session_type: str
    driver_count: int
    processed: bool


class SessionDetailResponse(SessionSummaryResponse):
    results: list[DriverResultResponse]


class DriverHistoryEntry(BaseModel):
    session_id: str
    session_name: str
    session_date: datetime
    session_type: str
    kart_number: int | None = None
    final_position: int | None = None
    best_time_ms: int | None = None
    total_laps: int


# --- Lap capture ---


class LapCaptureStatusResponse(BaseModel):
    enabled: bool
    previous_state: bool | None = None


class LapCaptureToggleRequest(BaseModel):
    enabled: bool
