"""Atomic assignment guard.

Every way a conversation gets an operator (automatic match, wallet, manual
override, transfer) goes through :meth:`AssignmentGuard.assign`. The
assignment is a set of conditional updates executed inside one savepoint:

1. the operator row, guarded by its ``version`` counter, online status and
   the live count of open conversations against ``capacity``;
2. the conversation row, guarded by its current ``assigned_operator_id``;
3. the queue entry, guarded by ``resolved_at IS NULL``.

If any update touches no row the savepoint is rolled back and
:class:`AssignmentConflict` is raised. Nothing here commits; the caller owns
the transaction.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from ..core.audit import record_event
from ..core.clock import Clock, system_clock
from ..core.errors import AssignmentConflict
from ..models import (
    Conversation,
    ConversationStatus,
    Operator,
    OperatorStatus,
    QueueEntry,
    TriageState,
)
from ..operators.schemas import OperatorCandidate
from .schemas import AssignmentResult

logger = logging.getLogger(__name__)

_FINISHED = (ConversationStatus.CLOSED, ConversationStatus.ARCHIVED)


def _open_load():
    return (
        select(func.count(Conversation.id))
        .where(
            Conversation.assigned_operator_id == Operator.id,
            Conversation.status == ConversationStatus.OPEN,
        )
        .correlate(Operator)
        .scalar_subquery()
    )


class AssignmentGuard:
    def __init__(self, session: Session, *, clock: Clock = system_clock) -> None:
        self._session = session
        self._clock = clock

    def _bump_operator(self, operator_id: uuid.UUID) -> None:
        self._session.execute(
            update(Operator)
            .where(Operator.id == operator_id)
            .values(version=Operator.version + 1)
            .execution_options(synchronize_session="fetch")
        )

    def assign(
        self,
        conversation_id: int,
        candidate: OperatorCandidate,
        *,
        reason: str,
        entry_id: int | None = None,
        expected_operator_id: uuid.UUID | None = None,
        attempted_at: datetime | None = None,
    ) -> AssignmentResult:
        """Assign ``conversation_id`` to ``candidate`` or raise ``AssignmentConflict``.

        ``expected_operator_id`` is the operator currently holding the
        conversation (``None`` for unassigned conversations); passing it
        turns the assignment into a transfer.
        """

        now = self._clock()
        with self._session.begin_nested():
            claimed = self._session.execute(
                update(Operator)
                .where(
                    Operator.id == candidate.operator_id,
                    Operator.version == candidate.version,
                    Operator.is_active.is_(True),
                    Operator.status == OperatorStatus.ONLINE,
                    _open_load() < Operator.capacity,
                )
                .values(version=Operator.version + 1, last_assigned_at=now)
                .execution_options(synchronize_session="fetch")
            )
            if claimed.rowcount != 1:
                raise AssignmentConflict(
                    f"Operator {candidate.operator_id} changed since it was selected",
                    subject="operator",
                )

            holder = (
                Conversation.assigned_operator_id.is_(None)
                if expected_operator_id is None
                else Conversation.assigned_operator_id == expected_operator_id
            )
            taken = self._session.execute(
                update(Conversation)
                .where(
                    Conversation.id == conversation_id,
                    Conversation.status.not_in(_FINISHED),
                    holder,
                )
                .values(
                    assigned_operator_id=candidate.operator_id,
                    assigned_at=now,
                    status=ConversationStatus.OPEN,
                    triage_state=TriageState.ROUTED,
                    triage_updated_at=now,
                    triage_retry_at=None,
                    version=Conversation.version + 1,
                )
                .execution_options(synchronize_session="fetch")
            )
            if taken.rowcount != 1:
                raise AssignmentConflict(
                    f"Conversation {conversation_id} is no longer assignable",
                    subject="conversation",
                )
            if expected_operator_id is not None:
                self._bump_operator(expected_operator_id)

            resolve = update(QueueEntry).where(
                QueueEntry.conversation_id == conversation_id,
                QueueEntry.resolved_at.is_(None),
            )
            if entry_id is not None:
                resolve = resolve.where(QueueEntry.id == entry_id)
            resolved = self._session.execute(
                resolve.values(
                    claimed_at=attempted_at or now,
                    resolved_at=now,
                    resolved_operator_id=candidate.operator_id,
                ).execution_options(synchronize_session="fetch")
            )
            if entry_id is not None and resolved.rowcount != 1:
                raise AssignmentConflict(
                    f"Queue entry {entry_id} was already resolved", subject="entry"
                )

            record_event(
                self._session,
                conversation_id,
                "transferred" if expected_operator_id else "assigned",
                f"Assigned to {candidate.name} ({reason})",
                operator_id=candidate.operator_id,
                at=now,
                reason=reason,
                entry_id=entry_id,
                previous_operator_id=expected_operator_id,
            )

        logger.info(
            "Conversation %s assigned to operator %s (%s)",
            conversation_id,
            candidate.operator_id,
            reason,
        )
        return AssignmentResult(
            conversation_id=conversation_id,
            operator_id=candidate.operator_id,
            assigned_at=now,
            reason=reason,
            entry_id=entry_id,
            previous_operator_id=expected_operator_id,
        )

    def release(
        self, conversation_id: int, operator_id: uuid.UUID, *, reason: str
    ) -> None:
        """Take an open conversation away from ``operator_id`` (back to pending)."""

        now = self._clock()
        with self._session.begin_nested():
            released = self._session.execute(
                update(Conversation)
                .where(
                    Conversation.id == conversation_id,
                    Conversation.assigned_operator_id == operator_id,
                    Conversation.status == ConversationStatus.OPEN,
                )
                .values(
                    assigned_operator_id=None,
                    assigned_at=None,
                    status=ConversationStatus.PENDING,
                    triage_state=TriageState.QUEUED,
                    triage_updated_at=now,
                    version=Conversation.version + 1,
                )
                .execution_options(synchronize_session="fetch")
            )
            if released.rowcount != 1:
                raise AssignmentConflict(
                    f"Conversation {conversation_id} is not held by {operator_id}",
                    subject="conversation",
                )
            self._bump_operator(operator_id)
            record_event(
                self._session,
                conversation_id,
                "released",
                reason,
                operator_id=operator_id,
                at=now,
            )
        logger.info(
            "Conversation %s released from operator %s: %s",
            conversation_id,
            operator_id,
            reason,
        )

    def close(self, conversation_id: int) -> uuid.UUID | None:
        """Close a conversation; returns the operator whose slot was freed."""

        now = self._clock()
        with self._session.begin_nested():
            holder = self._session.execute(
                select(Conversation.assigned_operator_id, Conversation.status).where(
                    Conversation.id == conversation_id
                )
            ).one_or_none()
            if holder is None or holder[1] in _FINISHED:
                return None
            operator_id = holder[0]
            closed = self._session.execute(
                update(Conversation)
                .where(
                    Conversation.id == conversation_id,
                    Conversation.status.not_in(_FINISHED),
                )
                .values(
                    status=ConversationStatus.CLOSED,
                    closed_at=now,
                    version=Conversation.version + 1,
                )
                .execution_options(synchronize_session="fetch")
            )
            if closed.rowcount != 1:
                return None
            if operator_id is not None:
                self._bump_operator(operator_id)
            self._session.execute(
                update(QueueEntry)
                .where(
                    QueueEntry.conversation_id == conversation_id,
                    QueueEntry.resolved_at.is_(None),
                )
                .values(resolved_at=now)
                .execution_options(synchronize_session="fetch")
            )
            record_event(
                self._session,
                conversation_id,
                "closed",
                "Conversation closed",
                operator_id=operator_id,
                at=now,
            )
        logger.info("Conversation %s closed", conversation_id)
        return operator_id


__all__ = ["AssignmentGuard"]
