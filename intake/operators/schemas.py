"""Pydantic schemas and value objects for the operator registry."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, time

from pydantic import BaseModel, Field

from ..models.enums import OperatorStatus


@dataclass(frozen=True)
class OperatorCandidate:
    """Snapshot of an eligible operator taken while matching.

    ``version`` is the value the atomic assignment compares against; if the
    operator is assigned or released in between, the assignment fails and
    matching restarts from a fresh snapshot.
    """

    operator_id: uuid.UUID
    name: str
    load: int
    capacity: int
    version: int
    last_assigned_at: datetime | None = None

    @property
    def free_slots(self) -> int:
        return max(self.capacity - self.load, 0)


@dataclass(frozen=True)
class EligibilityContext:
    """Constraints for candidate selection."""

    at: datetime
    queue_id: uuid.UUID | None = None
    operator_id: uuid.UUID | None = None
    check_working_hours: bool = True


class OperatorView(BaseModel):
    id: uuid.UUID
    name: str
    status: OperatorStatus
    capacity: int
    load: int
    work_start: time | None = None
    work_end: time | None = None
    last_assigned_at: datetime | None = None
    queue_ids: list[uuid.UUID] = Field(default_factory=list)


class OperatorList(BaseModel):
    items: list[OperatorView]
    total: int


class StatusUpdateRequest(BaseModel):
    status: OperatorStatus


class ReleaseResponse(BaseModel):
    operator_id: uuid.UUID
    requeued_conversation_ids: list[int]
