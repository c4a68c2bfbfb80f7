"""Operator, service queue and wallet models.

Operators are owned by identity management; this service only reads their
profile and mutates availability (``status``) and the optimistic
concurrency counter (``version``). Load is never stored: it is the count of
open conversations assigned to the operator.
"""

from __future__ import annotations

import datetime as dt
import uuid
from typing import List

from sqlalchemy import Boolean, ForeignKey, Index, Integer, String, Text, Time
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from . import Base
from .enums import OperatorStatus
from .types import UTCDateTime, enum_column, utcnow


class Operator(Base):
    """A human agent that can be assigned conversations.

    Attributes:
        status: Live availability (online/busy/away/offline).
        capacity: Maximum number of concurrently open conversations.
        work_start: Start of the daily working window (operator timezone).
        work_end: End of the working window; may be earlier than
            ``work_start`` for overnight shifts.
        version: Bumped by every assignment and release. Assignments are a
            compare-and-swap on this value so that two matchers can never
            both fill the operator's last slot.
        last_assigned_at: Used to prefer the longest idle operator.
    """

    __tablename__ = "operators"
    __table_args__ = (Index("ix_operators_status", "status"),)

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    name: Mapped[str] = mapped_column(String(length=255), nullable=False)
    status: Mapped[OperatorStatus] = mapped_column(
        enum_column(OperatorStatus, length=16),
        nullable=False,
        default=OperatorStatus.OFFLINE,
    )
    capacity: Mapped[int] = mapped_column(Integer, nullable=False, default=5)
    work_start: Mapped[dt.time | None] = mapped_column(Time(), nullable=True)
    work_end: Mapped[dt.time | None] = mapped_column(Time(), nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_assigned_at: Mapped[dt.datetime | None] = mapped_column(UTCDateTime())
    status_changed_at: Mapped[dt.datetime | None] = mapped_column(UTCDateTime())
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[dt.datetime] = mapped_column(
        UTCDateTime(), nullable=False, default=utcnow
    )

    memberships: Mapped[List["QueueMembership"]] = relationship(
        back_populates="operator",
        cascade="all, delete-orphan",
    )


class ServiceQueue(Base):
    """A named service queue (sales, support, finance, ...).

    ``unit_ref`` groups queues into business units so routing rules can
    target a whole unit.
    """

    __tablename__ = "service_queues"
    __table_args__ = (Index("ix_service_queues_unit", "unit_ref"),)

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    name: Mapped[str] = mapped_column(String(length=255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text(), nullable=True)
    unit_ref: Mapped[str | None] = mapped_column(String(length=64), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    memberships: Mapped[List["QueueMembership"]] = relationship(
        back_populates="queue",
        cascade="all, delete-orphan",
    )


class QueueMembership(Base):
    __tablename__ = "operator_queue_memberships"
    __table_args__ = (
        Index(
            "ix_operator_queue_memberships_unique",
            "operator_id",
            "queue_id",
            unique=True,
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    operator_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("operators.id", ondelete="CASCADE"),
        nullable=False,
    )
    queue_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("service_queues.id", ondelete="CASCADE"),
        nullable=False,
    )

    operator: Mapped[Operator] = relationship(back_populates="memberships")
    queue: Mapped[ServiceQueue] = relationship(back_populates="memberships")


class ContactWallet(Base):
    """Pre-existing ownership of a contact by an operator ("carteira")."""

    __tablename__ = "contact_wallets"
    __table_args__ = (Index("ix_contact_wallets_contact", "contact_ref"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    contact_ref: Mapped[str] = mapped_column(String(length=64), nullable=False)
    operator_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("operators.id", ondelete="CASCADE"),
        nullable=False,
    )
    reason: Mapped[str | None] = mapped_column(Text(), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[dt.datetime] = mapped_column(
        UTCDateTime(), nullable=False, default=utcnow
    )


__all__ = ["ContactWallet", "Operator", "QueueMembership", "ServiceQueue"]
