"""Value objects and API schemas for queueing and distribution."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime

from pydantic import BaseModel, Field


@dataclass(frozen=True)
class AssignmentResult:
    """Outcome of a successful atomic assignment."""

    conversation_id: int
    operator_id: uuid.UUID
    assigned_at: datetime
    reason: str
    entry_id: int | None = None
    previous_operator_id: uuid.UUID | None = None


class QueueEntryView(BaseModel):
    id: int
    conversation_id: int
    target_queue_id: uuid.UUID | None = None
    target_operator_id: uuid.UUID | None = None
    priority: int
    priority_reason: str | None = None
    enqueued_at: datetime
    claimed_at: datetime | None = None
    match_attempts: int = 0
    last_attempt_at: datetime | None = None
    sla_breached: bool = False
    wait_seconds: float


class QueueView(BaseModel):
    items: list[QueueEntryView]
    total: int


class AssignmentView(BaseModel):
    conversation_id: int
    operator_id: uuid.UUID
    assigned_at: datetime
    reason: str
    entry_id: int | None = None
    previous_operator_id: uuid.UUID | None = None

    @classmethod
    def from_result(cls, result: AssignmentResult) -> "AssignmentView":
        return cls(
            conversation_id=result.conversation_id,
            operator_id=result.operator_id,
            assigned_at=result.assigned_at,
            reason=result.reason,
            entry_id=result.entry_id,
            previous_operator_id=result.previous_operator_id,
        )


class DrainResponse(BaseModel):
    assigned: list[AssignmentView] = Field(default_factory=list)


class ManualAssignRequest(BaseModel):
    operator_id: uuid.UUID
