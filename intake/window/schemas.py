"""Pydantic schemas for messaging window state."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel


class WindowView(BaseModel):
    conversation_id: int
    opened_at: datetime | None = None
    closes_at: datetime | None = None
    is_open: bool
    remaining_seconds: float


class WindowExpireRequest(BaseModel):
    at: datetime | None = None
