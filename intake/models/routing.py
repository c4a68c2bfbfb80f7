"""Declarative routing rules (read-only to this service)."""

from __future__ import annotations

import datetime as dt
import uuid

from sqlalchemy import Boolean, Index, Integer, String, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from . import Base
from .enums import ConditionType, DestinationType
from .types import UTCDateTime, enum_column, utcnow


class RoutingRule(Base):
    """Condition → destination mapping evaluated after classification.

    Rules are evaluated in descending ``priority``; the first match wins.

    ``condition_value`` formats:

    - ``keyword``: comma separated keywords, any of which must appear in the
      customer messages.
    - ``intent`` / ``sector``: comma separated accepted values.
    - ``origin``: comma separated channel account references or channel names.
    - ``schedule``: ``"HH:MM-HH:MM"`` optionally prefixed by a weekday range,
      e.g. ``"mon-fri 08:00-18:00"``.
    """

    __tablename__ = "routing_rules"
    __table_args__ = (Index("ix_routing_rules_active", "is_active", "priority"),)

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    name: Mapped[str] = mapped_column(String(length=255), nullable=False)
    condition_type: Mapped[ConditionType] = mapped_column(
        enum_column(ConditionType, length=16), nullable=False
    )
    condition_value: Mapped[str] = mapped_column(Text(), nullable=False)
    destination_type: Mapped[DestinationType] = mapped_column(
        enum_column(DestinationType, length=16), nullable=False
    )
    destination_id: Mapped[str] = mapped_column(String(length=64), nullable=False)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[dt.datetime] = mapped_column(
        UTCDateTime(), nullable=False, default=utcnow
    )


__all__ = ["RoutingRule"]
