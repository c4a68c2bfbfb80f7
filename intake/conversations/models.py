"""Domain models used by the conversation service."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from ..models import PriorityTag


@dataclass
class NormalizedMessage:
    """Uniform representation of inbound channel messages."""

    channel: str
    channel_account_ref: str
    contact_ref: str
    text: str
    contact_name: str | None = None
    external_message_id: str | None = None
    priority_tag: PriorityTag | None = None
    attachments: list[dict[str, Any]] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    sent_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
