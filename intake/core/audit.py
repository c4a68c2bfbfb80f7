"""Conversation audit trail helpers."""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy.orm import Session

from ..models import ConversationEvent


def _jsonable(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (uuid.UUID, datetime)):
        return str(value)
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


def record_event(
    session: Session,
    conversation_id: int,
    event_type: str,
    description: str | None = None,
    *,
    operator_id: uuid.UUID | None = None,
    at: datetime | None = None,
    **data: Any,
) -> ConversationEvent:
    """Append a row to ``conversation_events`` in the current transaction."""

    event = ConversationEvent(
        conversation_id=conversation_id,
        event_type=event_type,
        description=description,
        operator_id=operator_id,
        data=_jsonable(data),
    )
    if at is not None:
        event.created_at = at
    session.add(event)
    return event


__all__ = ["record_event"]
