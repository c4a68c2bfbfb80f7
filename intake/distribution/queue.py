"""Persistent priority wait queue.

Entries are ordered by ``priority DESC, enqueued_at ASC, id ASC``. The
partial unique index on ``queue_entries`` guarantees at most one unresolved
entry per conversation, so concurrent enqueues collapse into one row.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..config import IntakeSettings
from ..core.clock import Clock, system_clock
from ..models import Conversation, PriorityTag, QueueEntry, priority_score
from .schemas import QueueEntryView

logger = logging.getLogger(__name__)

URGENT_SCORE = priority_score(PriorityTag.URGENT)
_ESCALATE_BELOW = priority_score(PriorityTag.HIGH)


def _ordered(stmt):
    return stmt.order_by(
        QueueEntry.priority.desc(), QueueEntry.enqueued_at.asc(), QueueEntry.id.asc()
    )


class WaitQueue:
    def __init__(
        self,
        session: Session,
        settings: IntakeSettings,
        *,
        clock: Clock = system_clock,
    ) -> None:
        self._session = session
        self._settings = settings
        self._clock = clock

    def get(self, entry_id: int) -> QueueEntry | None:
        return self._session.execute(
            select(QueueEntry)
            .where(QueueEntry.id == entry_id)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def active_entry(self, conversation_id: int) -> QueueEntry | None:
        return self._session.execute(
            select(QueueEntry)
            .where(
                QueueEntry.conversation_id == conversation_id,
                QueueEntry.resolved_at.is_(None),
            )
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def enqueue(
        self,
        conversation_id: int,
        *,
        priority: int | None = None,
        queue_id: uuid.UUID | None = None,
        operator_id: uuid.UUID | None = None,
        reason: str | None = None,
        at: datetime | None = None,
    ) -> QueueEntry:
        """Create the conversation's wait entry, or return the existing one.

        Enqueueing an already waiting conversation is a no-op apart from
        raising its priority when the new score is higher.
        """

        score = priority_score(PriorityTag.NORMAL) if priority is None else priority
        existing = self.active_entry(conversation_id)
        if existing is not None:
            return self._raise_priority(existing, score, reason)

        entry = QueueEntry(
            conversation_id=conversation_id,
            target_queue_id=queue_id,
            target_operator_id=operator_id,
            priority=score,
            priority_reason=reason,
            enqueued_at=at or self._clock(),
        )
        try:
            with self._session.begin_nested():
                self._session.add(entry)
        except IntegrityError:
            # Lost the race against a concurrent enqueue of the same conversation.
            existing = self.active_entry(conversation_id)
            if existing is None:
                raise
            return self._raise_priority(existing, score, reason)

        if queue_id is not None:
            self._session.execute(
                update(Conversation)
                .where(Conversation.id == conversation_id)
                .values(assigned_queue_id=queue_id)
            )
        logger.info(
            "Enqueued conversation %s (entry %s, priority %s, queue %s, operator %s)",
            conversation_id,
            entry.id,
            score,
            queue_id,
            operator_id,
        )
        return entry

    def _raise_priority(
        self, entry: QueueEntry, score: int, reason: str | None
    ) -> QueueEntry:
        if score <= entry.priority:
            return entry
        self._session.execute(
            update(QueueEntry)
            .where(
                QueueEntry.id == entry.id,
                QueueEntry.resolved_at.is_(None),
                QueueEntry.priority < score,
            )
            .values(priority=score, priority_reason=reason or entry.priority_reason)
        )
        return self.get(entry.id) or entry

    def peek_highest(self, queue_id: uuid.UUID | None = None) -> QueueEntry | None:
        """Return the next entry to match; queue scoped when ``queue_id`` is set."""

        entries = self.pending(queue_id, limit=1)
        return entries[0] if entries else None

    def pending(
        self, queue_id: uuid.UUID | None = None, *, limit: int | None = None
    ) -> list[QueueEntry]:
        stmt = select(QueueEntry).where(QueueEntry.resolved_at.is_(None))
        if queue_id is not None:
            stmt = stmt.where(QueueEntry.target_queue_id == queue_id)
        stmt = _ordered(stmt)
        if limit is not None:
            stmt = stmt.limit(limit)
        return list(
            self._session.execute(stmt.execution_options(populate_existing=True))
            .scalars()
            .all()
        )

    def mark_attempt(self, entry_id: int, at: datetime | None = None) -> None:
        self._session.execute(
            update(QueueEntry)
            .where(QueueEntry.id == entry_id, QueueEntry.resolved_at.is_(None))
            .values(
                match_attempts=QueueEntry.match_attempts + 1,
                last_attempt_at=at or self._clock(),
            )
        )

    def resolve_for_conversation(
        self, conversation_id: int, at: datetime | None = None
    ) -> int:
        """Resolve the conversation's entry without an operator (closed elsewhere)."""

        result = self._session.execute(
            update(QueueEntry)
            .where(
                QueueEntry.conversation_id == conversation_id,
                QueueEntry.resolved_at.is_(None),
            )
            .values(resolved_at=at or self._clock())
        )
        return result.rowcount or 0

    def stale_entries(
        self, at: datetime | None = None, *, limit: int | None = None
    ) -> list[QueueEntry]:
        """Unresolved entries waiting longer than the staleness threshold."""

        now = at or self._clock()
        threshold = now - timedelta(seconds=self._settings.queue_stale_seconds)
        stmt = _ordered(
            select(QueueEntry).where(
                QueueEntry.resolved_at.is_(None),
                QueueEntry.enqueued_at <= threshold,
            )
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        return list(
            self._session.execute(stmt.execution_options(populate_existing=True))
            .scalars()
            .all()
        )

    def escalate_breaches(self, at: datetime | None = None) -> list[int]:
        """Flag entries past the SLA wait and raise normal/low ones to urgent.

        Returns the ids of the entries newly flagged.
        """

        now = at or self._clock()
        threshold = now - timedelta(seconds=self._settings.sla_wait_seconds)
        breached = list(
            self._session.execute(
                select(QueueEntry.id).where(
                    QueueEntry.resolved_at.is_(None),
                    QueueEntry.sla_breached.is_(False),
                    QueueEntry.enqueued_at <= threshold,
                )
            ).scalars()
        )
        if not breached:
            return []
        self._session.execute(
            update(QueueEntry)
            .where(QueueEntry.id.in_(breached), QueueEntry.resolved_at.is_(None))
            .values(sla_breached=True)
        )
        self._session.execute(
            update(QueueEntry)
            .where(
                QueueEntry.id.in_(breached),
                QueueEntry.resolved_at.is_(None),
                QueueEntry.priority < _ESCALATE_BELOW,
            )
            .values(priority=URGENT_SCORE, priority_reason="SLA wait exceeded")
        )
        logger.warning("SLA breached for queue entries %s", breached)
        return breached

    def view(self, entry: QueueEntry, at: datetime | None = None) -> QueueEntryView:
        now = at or self._clock()
        return QueueEntryView(
            id=entry.id,
            conversation_id=entry.conversation_id,
            target_queue_id=entry.target_queue_id,
            target_operator_id=entry.target_operator_id,
            priority=entry.priority,
            priority_reason=entry.priority_reason,
            enqueued_at=entry.enqueued_at,
            claimed_at=entry.claimed_at,
            match_attempts=entry.match_attempts,
            last_attempt_at=entry.last_attempt_at,
            sla_breached=entry.sla_breached,
            wait_seconds=max((now - entry.enqueued_at).total_seconds(), 0.0),
        )


__all__ = ["URGENT_SCORE", "WaitQueue"]
