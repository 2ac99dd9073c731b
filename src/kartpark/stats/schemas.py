"""Pydantic schemas for racing statistics."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel


class RecentSessionResponse(BaseModel):
    session_id: str
    session_name: str
    session_date: datetime
    session_type: str
    final_position: int | None = None
    best_time_ms: int | None = None
    kart_number: int | None = None


class MonthlyStatsResponse(BaseModel):
    year: int
    month: int
    races: int
    best_time_ms: int
    podiums: int


class StatisticsResponse(BaseModel):
    user_id: int
    status: str
    driver_name: str | None = None
    total_races: int
    timed_races: int
    best_time_ms: int
    average_time_ms: int
    podium_finishes: int
    podium_percentage: int
    first_places: int
    second_places: int
    third_places: int
    best_position: int
    total_laps: int
    favorite_kart: int | None = None
    first_race_at: datetime | None = None
    last_race_at: datetime | None = None
    recent_sessions: list[RecentSessionResponse] = []
    monthly_stats: list[MonthlyStatsResponse] = []
    computed_at: datetime | None = None


class ProcessPendingResponse(BaseModel):
    processed_sessions: int
