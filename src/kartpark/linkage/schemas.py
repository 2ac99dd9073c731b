"""Pydantic schemas for linkage requests."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class CreateLinkageRequest(BaseModel):
    searched_name: str = Field(..., min_length=1, max_length=128)
    selected_driver_name: str = Field(..., min_length=1, max_length=128)
    selected_session_id: str = Field(..., min_length=1, max_length=128)


class ApproveRequest(BaseModel):
    notes: str | None = Field(None, max_length=1000)


class RejectRequest(BaseModel):
    reason: str = Field(..., max_length=1000)
    notes: str | None = Field(None, max_length=1000)


class LinkageRequestResponse(BaseModel):
    id: int
    web_user_id: int
    searched_name: str
    selected_driver_name: str
    selected_session_id: str
    status: str
    reviewed_at: datetime | None = None
    reviewed_by: int | None = None
    rejection_reason: str | None = None
    admin_notes: str | None = None
    user_snapshot: dict[str, Any] = {}
    driver_snapshot: dict[str, Any] = {}
    created_at: datetime | None = None
    updated_at: datetime | None = None


class LinkageRequestListResponse(BaseModel):
    requests: list[LinkageRequestResponse]
    total: int
    page: int
    per_page: int


class PendingCountResponse(BaseModel):
    pending: int


class LinkStatusResponse(BaseModel):
    user_id: int
    driver_name: str | None = None
    link_status: str
    linked_at: datetime | None = None
