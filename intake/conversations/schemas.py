"""Pydantic schemas for conversation intake APIs."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from ..models import (
    ConversationStatus,
    MessageDirection,
    PriorityTag,
    TriageState,
)
from ..window.schemas import WindowView


class InboundMessageRequest(BaseModel):
    contact_ref: str = Field(min_length=1, max_length=64)
    channel_account_ref: str = Field(min_length=1, max_length=64)
    text: str = ""
    contact_name: str | None = None
    channel: str = "whatsapp"
    priority_tag: PriorityTag | None = None
    sent_at: datetime | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class OutboundMessageRequest(BaseModel):
    text: str
    sent_at: datetime | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class ConversationMessage(BaseModel):
    id: int
    conversation_id: int
    direction: MessageDirection
    body: str
    sent_at: datetime


class ConversationDetail(BaseModel):
    id: int
    contact_ref: str
    contact_name: str | None = None
    channel: str
    channel_account_ref: str
    status: ConversationStatus
    triage_state: TriageState
    triage_attempts: int = 0
    triage_retry_at: datetime | None = None
    triage_error: str | None = None
    customer_ref: str | None = None
    intent: str | None = None
    intent_confidence: float | None = None
    sentiment: str | None = None
    priority_tag: PriorityTag
    assigned_operator_id: uuid.UUID | None = None
    assigned_queue_id: uuid.UUID | None = None
    assigned_at: datetime | None = None
    closed_at: datetime | None = None
    created_at: datetime
    updated_at: datetime
    window: WindowView
    messages: list[ConversationMessage] = Field(default_factory=list)


class TriageView(BaseModel):
    state: TriageState
    operator_id: uuid.UUID | None = None
    entry_id: int | None = None
    detail: str | None = None


class MessageIngestResponse(BaseModel):
    conversation: ConversationDetail
    triage: TriageView | None = None
    processed_messages: int = 1
