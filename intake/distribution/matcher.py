"""Distribution Matcher: pairs waiting conversations with operators."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..config import IntakeSettings
from ..core.clock import Clock, system_clock
from ..core.errors import (
    AssignmentConflict,
    ConversationNotFoundError,
    InvalidTransitionError,
    OperatorUnavailableError,
)
from ..models import Conversation, ConversationStatus, QueueEntry, priority_score
from ..notifications import LoggingNotifier, Notifier, safe_notify
from ..operators.registry import OperatorRegistry
from ..operators.schemas import EligibilityContext
from .assignment import AssignmentGuard
from .queue import WaitQueue
from .schemas import AssignmentResult

logger = logging.getLogger(__name__)

_FINISHED = (ConversationStatus.CLOSED, ConversationStatus.ARCHIVED)


class DistributionMatcher:
    """Selects the best eligible operator and assigns through the guard.

    Candidates are ranked by the registry (lowest load, then longest idle).
    A lost race on the operator row re-runs selection from scratch up to
    ``match_max_retries`` times; after that the entry simply stays queued
    for the next trigger.
    """

    def __init__(
        self,
        session: Session,
        settings: IntakeSettings,
        registry: OperatorRegistry,
        queue: WaitQueue,
        guard: AssignmentGuard,
        *,
        notifier: Notifier | None = None,
        clock: Clock = system_clock,
    ) -> None:
        self._session = session
        self._settings = settings
        self._registry = registry
        self._queue = queue
        self._guard = guard
        self._notifier = notifier or LoggingNotifier()
        self._clock = clock

    @property
    def queue(self) -> WaitQueue:
        return self._queue

    def _finish(self, result: AssignmentResult) -> AssignmentResult:
        self._session.commit()
        safe_notify(self._notifier, result.operator_id, result.conversation_id)
        if result.previous_operator_id is not None:
            self._registry.capacity_freed(result.previous_operator_id)
        return result

    def _conversation(self, conversation_id: int) -> Conversation:
        conversation = self._session.execute(
            select(Conversation)
            .where(Conversation.id == conversation_id)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if conversation is None:
            raise ConversationNotFoundError(
                f"Conversation {conversation_id} not found"
            )
        return conversation

    # ------------------------------------------------------------------
    # Direct assignment

    def try_assign(
        self,
        conversation_id: int,
        *,
        reason: str,
        operator_id: uuid.UUID | None = None,
        queue_id: uuid.UUID | None = None,
        check_working_hours: bool = True,
    ) -> AssignmentResult | None:
        """Assign without a queue entry; ``None`` when nobody is eligible."""

        for attempt in range(1, self._settings.match_max_retries + 1):
            candidates = self._registry.eligible_operators(
                EligibilityContext(
                    at=self._clock(),
                    queue_id=queue_id,
                    operator_id=operator_id,
                    check_working_hours=check_working_hours,
                )
            )
            if not candidates:
                return None
            try:
                result = self._guard.assign(
                    conversation_id, candidates[0], reason=reason
                )
            except AssignmentConflict as exc:
                if exc.subject != "operator":
                    raise
                logger.debug(
                    "Lost race for operator %s on conversation %s (attempt %s)",
                    candidates[0].operator_id,
                    conversation_id,
                    attempt,
                )
                continue
            return self._finish(result)
        return None

    # ------------------------------------------------------------------
    # Queue matching

    def match_entry(self, entry_id: int) -> AssignmentResult | None:
        """Try to resolve one queue entry; leaves it queued on failure."""

        entry = self._queue.get(entry_id)
        if entry is None or entry.resolved_at is not None:
            return None
        attempted_at = self._clock()
        for attempt in range(1, self._settings.match_max_retries + 1):
            candidates = self._registry.eligible_operators(
                EligibilityContext(
                    at=attempted_at,
                    queue_id=entry.target_queue_id,
                    operator_id=entry.target_operator_id,
                )
            )
            if not candidates:
                break
            try:
                result = self._guard.assign(
                    entry.conversation_id,
                    candidates[0],
                    reason="queue",
                    entry_id=entry.id,
                    attempted_at=attempted_at,
                )
            except AssignmentConflict as exc:
                if exc.subject == "operator":
                    logger.debug(
                        "Lost race for operator %s on entry %s (attempt %s)",
                        candidates[0].operator_id,
                        entry.id,
                        attempt,
                    )
                    continue
                self._settle_orphan(entry)
                return None
            return self._finish(result)

        self._queue.mark_attempt(entry.id, attempted_at)
        self._session.commit()
        return None

    def _settle_orphan(self, entry: QueueEntry) -> None:
        """Resolve an entry whose conversation was closed or taken elsewhere."""

        conversation = self._conversation(entry.conversation_id)
        if (
            conversation.status in _FINISHED
            or conversation.assigned_operator_id is not None
        ):
            self._queue.resolve_for_conversation(conversation.id)
            logger.info(
                "Resolved orphan queue entry %s for conversation %s",
                entry.id,
                conversation.id,
            )
        self._session.commit()

    def dequeue_and_assign(
        self, queue_id: uuid.UUID | None = None
    ) -> AssignmentResult | None:
        entry = self._queue.peek_highest(queue_id)
        if entry is None:
            return None
        return self.match_entry(entry.id)

    def drain(self, queue_id: uuid.UUID | None = None) -> list[AssignmentResult]:
        """Match waiting entries in priority order until nothing more fits.

        Once an entry cannot be matched, later entries with the same target
        are skipped so that a lower ranked entry never overtakes it.
        """

        results: list[AssignmentResult] = []
        blocked: set[tuple[uuid.UUID | None, uuid.UUID | None]] = set()
        for entry in self._queue.pending(queue_id, limit=self._settings.sweep_batch_size):
            target = (entry.target_queue_id, entry.target_operator_id)
            if target in blocked:
                continue
            result = self.match_entry(entry.id)
            if result is not None:
                results.append(result)
                continue
            refreshed = self._queue.get(entry.id)
            if refreshed is not None and refreshed.resolved_at is not None:
                continue
            blocked.add(target)
            if target == (None, None):
                break
        if results:
            logger.info("Drained %s queue entries", len(results))
        return results

    # ------------------------------------------------------------------
    # Overrides

    def assign_manually(
        self, conversation_id: int, operator_id: uuid.UUID
    ) -> AssignmentResult:
        """Assign (or transfer) a conversation to a specific operator.

        Working hours and queue membership are not checked, but the operator
        must be online and below capacity.
        """

        self._registry.get_operator(operator_id)
        for _ in range(self._settings.match_max_retries):
            conversation = self._conversation(conversation_id)
            if conversation.status in _FINISHED:
                raise InvalidTransitionError(
                    f"Conversation {conversation_id} is {conversation.status.value}"
                )
            if conversation.assigned_operator_id == operator_id:
                return AssignmentResult(
                    conversation_id=conversation_id,
                    operator_id=operator_id,
                    assigned_at=conversation.assigned_at or self._clock(),
                    reason="manual",
                )
            candidate = self._registry.candidate(
                operator_id, at=self._clock(), check_working_hours=False
            )
            if candidate is None:
                raise OperatorUnavailableError(
                    f"Operator {operator_id} is not online or has no free capacity"
                )
            try:
                result = self._guard.assign(
                    conversation_id,
                    candidate,
                    reason="manual",
                    expected_operator_id=conversation.assigned_operator_id,
                )
            except AssignmentConflict:
                logger.debug(
                    "Manual assignment of conversation %s raced, retrying",
                    conversation_id,
                )
                continue
            return self._finish(result)
        raise AssignmentConflict(
            f"Could not assign conversation {conversation_id} to {operator_id}"
        )

    def release_operator_conversations(self, operator_id: uuid.UUID) -> list[int]:
        """Re-queue every open conversation held by ``operator_id``."""

        self._registry.get_operator(operator_id)
        rows = self._session.execute(
            select(
                Conversation.id,
                Conversation.priority_tag,
                Conversation.assigned_queue_id,
            )
            .where(
                Conversation.assigned_operator_id == operator_id,
                Conversation.status == ConversationStatus.OPEN,
            )
            .order_by(Conversation.assigned_at.asc(), Conversation.id.asc())
        ).all()
        requeued: list[int] = []
        for conversation_id, tag, queue_id in rows:
            try:
                with self._session.begin_nested():
                    self._guard.release(
                        conversation_id, operator_id, reason="operator released"
                    )
                    self._queue.enqueue(
                        conversation_id,
                        priority=priority_score(tag),
                        queue_id=queue_id,
                        reason="released from unavailable operator",
                    )
            except AssignmentConflict:
                continue
            requeued.append(conversation_id)
        self._session.commit()
        logger.info(
            "Released %s conversations from operator %s", len(requeued), operator_id
        )
        if requeued:
            self.drain()
        return requeued

    def close_conversation(self, conversation_id: int) -> None:
        """Close a conversation and offer the freed slot to the queue."""

        self._conversation(conversation_id)
        operator_id = self._guard.close(conversation_id)
        self._session.commit()
        if operator_id is not None:
            self._registry.capacity_freed(operator_id)


__all__ = ["DistributionMatcher"]
