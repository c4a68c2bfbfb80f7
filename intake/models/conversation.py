"""Conversation, message, wait-queue and audit models."""

from __future__ import annotations

import datetime as dt
import uuid
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from . import Base
from .enums import (
    ConversationStatus,
    MessageDirection,
    PriorityTag,
    TriageState,
)
from .types import UTCDateTime, enum_column, utcnow


class Conversation(Base):
    """An ongoing exchange with one external contact.

    The messaging window (``window_opened_at``/``window_closes_at``) is
    embedded here; see :class:`intake.window.WindowTracker`. Triage retry
    bookkeeping is stored on the row so that a restarted sweeper can resume
    it. ``version`` guards triage state transitions.
    """

    __tablename__ = "conversations"
    __table_args__ = (
        Index("ix_conversations_contact", "contact_ref", "channel_account_ref"),
        Index("ix_conversations_triage", "triage_state", "triage_retry_at"),
        Index("ix_conversations_operator", "assigned_operator_id", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    contact_ref: Mapped[str] = mapped_column(String(length=64), nullable=False)
    contact_name: Mapped[str | None] = mapped_column(String(length=255))
    channel: Mapped[str] = mapped_column(
        String(length=32), nullable=False, default="whatsapp"
    )
    channel_account_ref: Mapped[str] = mapped_column(String(length=64), nullable=False)
    status: Mapped[ConversationStatus] = mapped_column(
        enum_column(ConversationStatus, length=16),
        nullable=False,
        default=ConversationStatus.PENDING,
    )
    triage_state: Mapped[TriageState] = mapped_column(
        enum_column(TriageState),
        nullable=False,
        default=TriageState.NEW,
    )
    triage_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    triage_retry_at: Mapped[dt.datetime | None] = mapped_column(UTCDateTime())
    triage_error: Mapped[str | None] = mapped_column(Text())
    triage_updated_at: Mapped[dt.datetime | None] = mapped_column(UTCDateTime())
    identifier_requested_at: Mapped[dt.datetime | None] = mapped_column(UTCDateTime())
    customer_ref: Mapped[str | None] = mapped_column(String(length=64))
    intent: Mapped[str | None] = mapped_column(String(length=64))
    intent_confidence: Mapped[float | None] = mapped_column(Float())
    sentiment: Mapped[str | None] = mapped_column(String(length=32))
    priority_tag: Mapped[PriorityTag] = mapped_column(
        enum_column(PriorityTag, length=16),
        nullable=False,
        default=PriorityTag.NORMAL,
    )
    assigned_operator_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("operators.id", ondelete="SET NULL"),
    )
    assigned_queue_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("service_queues.id", ondelete="SET NULL"),
    )
    assigned_at: Mapped[dt.datetime | None] = mapped_column(UTCDateTime())
    window_opened_at: Mapped[dt.datetime | None] = mapped_column(UTCDateTime())
    window_closes_at: Mapped[dt.datetime | None] = mapped_column(UTCDateTime())
    last_inbound_at: Mapped[dt.datetime | None] = mapped_column(UTCDateTime())
    last_outbound_at: Mapped[dt.datetime | None] = mapped_column(UTCDateTime())
    response_alerted_at: Mapped[dt.datetime | None] = mapped_column(UTCDateTime())
    resolution_alerted_at: Mapped[dt.datetime | None] = mapped_column(UTCDateTime())
    closed_at: Mapped[dt.datetime | None] = mapped_column(UTCDateTime())
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[dt.datetime] = mapped_column(
        UTCDateTime(), nullable=False, default=utcnow
    )
    updated_at: Mapped[dt.datetime] = mapped_column(
        UTCDateTime(), nullable=False, default=utcnow, onupdate=utcnow
    )


class ConversationMessage(Base):
    __tablename__ = "conversation_messages"
    __table_args__ = (
        Index("ix_conversation_messages_conversation", "conversation_id", "sent_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    conversation_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("conversations.id", ondelete="CASCADE"),
        nullable=False,
    )
    direction: Mapped[MessageDirection] = mapped_column(
        enum_column(MessageDirection, length=16), nullable=False
    )
    body: Mapped[str] = mapped_column(Text(), nullable=False, default="")
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    sent_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), nullable=False)


class QueueEntry(Base):
    """A conversation waiting for an operator.

    At most one unresolved entry may exist per conversation; the partial
    unique index below enforces it in the store. Ordering is
    ``priority DESC, enqueued_at ASC, id ASC``.
    """

    __tablename__ = "queue_entries"
    __table_args__ = (
        Index(
            "ux_queue_entries_active_conversation",
            "conversation_id",
            unique=True,
            postgresql_where=text("resolved_at IS NULL"),
            sqlite_where=text("resolved_at IS NULL"),
        ),
        Index("ix_queue_entries_order", "resolved_at", "priority", "enqueued_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    conversation_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("conversations.id", ondelete="CASCADE"),
        nullable=False,
    )
    target_queue_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("service_queues.id", ondelete="SET NULL"),
    )
    target_operator_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("operators.id", ondelete="SET NULL"),
    )
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=10)
    priority_reason: Mapped[str | None] = mapped_column(Text())
    enqueued_at: Mapped[dt.datetime] = mapped_column(
        UTCDateTime(), nullable=False, default=utcnow
    )
    claimed_at: Mapped[dt.datetime | None] = mapped_column(UTCDateTime())
    resolved_at: Mapped[dt.datetime | None] = mapped_column(UTCDateTime())
    resolved_operator_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("operators.id", ondelete="SET NULL"),
    )
    match_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_attempt_at: Mapped[dt.datetime | None] = mapped_column(UTCDateTime())
    sla_breached: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)


class ConversationEvent(Base):
    """Audit trail of triage transitions and assignments."""

    __tablename__ = "conversation_events"
    __table_args__ = (
        Index("ix_conversation_events_conversation", "conversation_id", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    conversation_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("conversations.id", ondelete="CASCADE"),
        nullable=False,
    )
    event_type: Mapped[str] = mapped_column(String(length=64), nullable=False)
    description: Mapped[str | None] = mapped_column(Text())
    operator_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True))
    data: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[dt.datetime] = mapped_column(
        UTCDateTime(), nullable=False, default=utcnow
    )


__all__ = ["Conversation", "ConversationEvent", "ConversationMessage", "QueueEntry"]
