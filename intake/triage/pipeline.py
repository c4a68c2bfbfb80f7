"""Triage pipeline.

For an unassigned conversation the pipeline tries, in order: the contact's
wallet operator, the operator owning the linked customer, the customer
identified by a CNPJ found in the messages (asking for it once), and finally
intent classification followed by routing rules. It ends with a direct
assignment (``routed``) or a queue entry (``queued``).

Each stage change is a compare-and-swap on ``conversations.version`` and is
committed on its own, so a crashed invocation leaves the conversation in a
resumable state that the reconciliation sweeper can pick up.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from ..config import IntakeSettings
from ..core.audit import record_event
from ..core.clock import Clock, system_clock
from ..core.errors import (
    AssignmentConflict,
    ClassificationTimeout,
    ConversationNotFoundError,
    LookupTimeout,
    PermanentClassificationError,
    StaleConversationError,
)
from ..distribution.matcher import DistributionMatcher
from ..distribution.queue import URGENT_SCORE
from ..models import (
    Conversation,
    ConversationMessage,
    ConversationStatus,
    DestinationType,
    MessageDirection,
    Operator,
    RoutingRule,
    ServiceQueue,
    TriageState,
    WalletMode,
    priority_score,
)
from ..operators.registry import OperatorRegistry
from ..operators.schemas import EligibilityContext
from .collaborators import (
    Classification,
    ClassificationContext,
    Classifier,
    CustomerLookup,
    CustomerMatch,
    IdentifierRequester,
    LoggingIdentifierRequester,
    NullCustomerLookup,
    bounded_call,
)
from .identifiers import scan_messages
from .rules import RuleContext, RuleEngine
from .states import transition

logger = logging.getLogger(__name__)

FAILED_TRIAGE_REASON = "triage failed, needs manual attention"

_FINISHED = (ConversationStatus.CLOSED, ConversationStatus.ARCHIVED)


@dataclass(frozen=True)
class TriageOutcome:
    conversation_id: int
    state: TriageState
    operator_id: uuid.UUID | None = None
    entry_id: int | None = None
    detail: str | None = None


class TriagePipeline:
    def __init__(
        self,
        session: Session,
        settings: IntakeSettings,
        registry: OperatorRegistry,
        matcher: DistributionMatcher,
        classifier: Classifier,
        *,
        lookup: CustomerLookup | None = None,
        requester: IdentifierRequester | None = None,
        clock: Clock = system_clock,
    ) -> None:
        self._session = session
        self._settings = settings
        self._registry = registry
        self._matcher = matcher
        self._queue = matcher.queue
        self._classifier = classifier
        self._lookup = lookup or NullCustomerLookup()
        self._requester = requester or LoggingIdentifierRequester()
        self._clock = clock
        self.rules = RuleEngine(session, timezone=settings.operator_timezone)

    # ------------------------------------------------------------------
    # Entry point

    def run(self, conversation_id: int) -> TriageOutcome:
        """Advance triage as far as possible for ``conversation_id``.

        Failures never propagate: they park the conversation in ``errored``
        with a retry deadline, or force-queue it once attempts run out.
        """

        conversation = self._load(conversation_id)
        if conversation.status in _FINISHED or conversation.assigned_operator_id:
            return self._outcome(conversation)
        if (
            conversation.triage_state is TriageState.ERRORED
            and conversation.triage_retry_at is not None
            and conversation.triage_retry_at > self._clock()
        ):
            return self._outcome(conversation, detail="waiting for retry")

        try:
            return self._advance(conversation)
        except (StaleConversationError, AssignmentConflict) as exc:
            return self._superseded(conversation_id, exc)
        except PermanentClassificationError as exc:
            self._session.rollback()
            logger.warning(
                "Classifier rejected conversation %s, using fallback queue: %s",
                conversation_id,
                exc,
            )
            try:
                return self._fallback(
                    self._load(conversation_id), reason=f"classification rejected: {exc}"
                )
            except (StaleConversationError, AssignmentConflict) as conflict:
                return self._superseded(conversation_id, conflict)
        except Exception as exc:
            self._session.rollback()
            logger.exception("Triage of conversation %s failed", conversation_id)
            try:
                return self._fail(self._load(conversation_id), exc)
            except (StaleConversationError, AssignmentConflict) as conflict:
                return self._superseded(conversation_id, conflict)

    def _superseded(self, conversation_id: int, exc: Exception) -> TriageOutcome:
        self._session.rollback()
        logger.debug("Triage of conversation %s superseded: %s", conversation_id, exc)
        return self._outcome(self._load(conversation_id), detail="superseded")

    def _advance(self, conversation: Conversation) -> TriageOutcome:
        while True:
            state = conversation.triage_state
            if state in (TriageState.NEW, TriageState.ERRORED):
                conversation = self._move(conversation, TriageState.WALLET_CHECK)
            elif state is TriageState.WALLET_CHECK:
                outcome = self._check_wallet(conversation)
                if outcome is not None:
                    return outcome
                conversation = self._move(conversation, TriageState.CUSTOMER_LINK_CHECK)
            elif state is TriageState.CUSTOMER_LINK_CHECK:
                outcome, conversation = self._check_customer_link(conversation)
                if outcome is not None:
                    return outcome
            elif state is TriageState.AWAITING_IDENTIFIER:
                outcome, conversation = self._await_identifier(conversation)
                if outcome is not None:
                    return outcome
            elif state is TriageState.AI_CLASSIFYING:
                return self._classify_and_route(conversation)
            else:
                return self._ensure_waiting(conversation)

    # ------------------------------------------------------------------
    # Stages

    def _check_wallet(self, conversation: Conversation) -> TriageOutcome | None:
        owner = self._registry.wallet_owner(conversation.contact_ref)
        if owner is None:
            return None
        return self._assign_owner(conversation, owner, reason="wallet")

    def _assign_owner(
        self, conversation: Conversation, operator_id: uuid.UUID, *, reason: str
    ) -> TriageOutcome | None:
        result = self._matcher.try_assign(
            conversation.id, reason=reason, operator_id=operator_id
        )
        if result is not None:
            return TriageOutcome(
                conversation.id, TriageState.ROUTED, operator_id=result.operator_id, detail=reason
            )
        if self._settings.wallet_mode is WalletMode.FORCED:
            return self._enqueue(
                conversation,
                operator_id=operator_id,
                reason=f"waiting for {reason} operator",
            )
        logger.info(
            "Owner %s of conversation %s unavailable, continuing triage",
            operator_id,
            conversation.id,
        )
        return None

    def _check_customer_link(
        self, conversation: Conversation
    ) -> tuple[TriageOutcome | None, Conversation]:
        match: CustomerMatch | None = bounded_call(
            self._lookup.lookup_by_contact,
            conversation.contact_ref,
            timeout=self._settings.lookup_timeout_seconds,
        )
        if match is None:
            return None, self._move(conversation, TriageState.AWAITING_IDENTIFIER)
        return self._route_customer(conversation, match, reason="customer owner")

    def _route_customer(
        self, conversation: Conversation, match: CustomerMatch, *, reason: str
    ) -> tuple[TriageOutcome | None, Conversation]:
        conversation = self._annotate(conversation, customer_ref=match.customer_ref)
        if match.owner_operator_id is not None:
            outcome = self._assign_owner(conversation, match.owner_operator_id, reason=reason)
            if outcome is not None:
                return outcome, conversation
        return None, self._move(conversation, TriageState.AI_CLASSIFYING)

    def _await_identifier(
        self, conversation: Conversation
    ) -> tuple[TriageOutcome | None, Conversation]:
        code = scan_messages(
            self._inbound_bodies(conversation.id, self._settings.identifier_scan_limit)
        )
        if code is not None:
            match: CustomerMatch | None = bounded_call(
                self._lookup.lookup_by_identifier,
                code,
                timeout=self._settings.lookup_timeout_seconds,
            )
            if match is not None:
                logger.info("Conversation %s identified by CNPJ %s", conversation.id, code)
                return self._route_customer(conversation, match, reason="identifier owner")
            record_event(
                self._session,
                conversation.id,
                "identifier_unknown",
                f"CNPJ {code} does not match any customer",
                code=code,
            )
            return None, self._move(conversation, TriageState.AI_CLASSIFYING)

        now = self._clock()
        if conversation.identifier_requested_at is None:
            conversation = self._move(
                conversation,
                TriageState.AWAITING_IDENTIFIER,
                identifier_requested_at=now,
            )
            bounded_call(
                self._requester.request_identifier,
                conversation.id,
                conversation.contact_ref,
                timeout=self._settings.lookup_timeout_seconds,
            )
            return self._outcome(conversation, detail="identifier requested"), conversation

        replies = self._session.execute(
            select(func.count(ConversationMessage.id)).where(
                ConversationMessage.conversation_id == conversation.id,
                ConversationMessage.direction == MessageDirection.INBOUND,
                ConversationMessage.sent_at > conversation.identifier_requested_at,
            )
        ).scalar_one()
        waited = now - conversation.identifier_requested_at
        if replies >= self._settings.identifier_max_wait_messages or waited >= timedelta(
            seconds=self._settings.identifier_wait_seconds
        ):
            logger.info(
                "No identifier for conversation %s after %s replies, classifying",
                conversation.id,
                replies,
            )
            return None, self._move(conversation, TriageState.AI_CLASSIFYING)
        return self._outcome(conversation, detail="waiting for identifier"), conversation

    def _classify_and_route(self, conversation: Conversation) -> TriageOutcome:
        bodies = self._inbound_bodies(conversation.id, self._settings.identifier_scan_limit)
        context = ClassificationContext(
            conversation_id=conversation.id,
            contact_ref=conversation.contact_ref,
            messages=list(reversed(bodies)),
            channel=conversation.channel,
            candidate_intents=self.rules.known_intents(),
        )
        try:
            classification: Classification = bounded_call(
                self._classifier.classify,
                context,
                timeout=self._settings.classifier_timeout_seconds,
            )
        except LookupTimeout as exc:
            raise ClassificationTimeout(str(exc)) from exc

        conversation = self._annotate(
            conversation,
            intent=classification.intent,
            intent_confidence=classification.confidence,
            sentiment=classification.sentiment,
        )
        record_event(
            self._session,
            conversation.id,
            "classified",
            f"Classified as {classification.intent} ({classification.confidence:.0%})",
            intent=classification.intent,
            confidence=classification.confidence,
            entities=classification.entities,
        )
        self._session.commit()

        intent = classification.intent
        if classification.confidence < self._settings.classifier_min_confidence:
            logger.info(
                "Ignoring low confidence intent %s for conversation %s",
                intent,
                conversation.id,
            )
            intent = None
        rule_context = RuleContext(
            at=self._clock(),
            text=context.text,
            intent=intent,
            sector=classification.entities.get("sector"),
            channel=conversation.channel,
            channel_account_ref=conversation.channel_account_ref,
            entities=classification.entities,
        )
        for rule in self.rules.evaluate(rule_context):
            outcome = self._route_to_rule(conversation, rule)
            if outcome is not None:
                return outcome
        return self._fallback(conversation, reason="no routing rule matched")

    def _route_to_rule(
        self, conversation: Conversation, rule: RoutingRule
    ) -> TriageOutcome | None:
        reason = f"rule {rule.name}"
        try:
            destination = uuid.UUID(rule.destination_id)
        except ValueError:
            destination = None

        if rule.destination_type is DestinationType.OPERATOR:
            operator = self._session.get(Operator, destination) if destination else None
            if operator is None or not operator.is_active:
                logger.warning("Rule %s points to unknown operator %s", rule.name, rule.destination_id)
                return None
            result = self._matcher.try_assign(
                conversation.id, reason=reason, operator_id=operator.id
            )
            if result is not None:
                return TriageOutcome(
                    conversation.id, TriageState.ROUTED, operator_id=result.operator_id, detail=reason
                )
            return self._enqueue(
                conversation,
                queue_id=self._settings.default_queue_id,
                reason=f"{reason}: operator unavailable",
            )

        if rule.destination_type is DestinationType.QUEUE:
            queue = self._session.get(ServiceQueue, destination) if destination else None
            if queue is None or not queue.is_active:
                logger.warning("Rule %s points to unknown queue %s", rule.name, rule.destination_id)
                return None
            return self._enqueue(conversation, queue_id=queue.id, reason=reason)

        queues = list(
            self._session.execute(
                select(ServiceQueue)
                .where(
                    ServiceQueue.unit_ref == rule.destination_id,
                    ServiceQueue.is_active.is_(True),
                )
                .order_by(ServiceQueue.name)
            ).scalars()
        )
        if not queues:
            logger.warning("Rule %s points to empty unit %s", rule.name, rule.destination_id)
            return None
        now = self._clock()
        chosen = next(
            (
                q
                for q in queues
                if self._registry.eligible_operators(EligibilityContext(at=now, queue_id=q.id))
            ),
            queues[0],
        )
        return self._enqueue(conversation, queue_id=chosen.id, reason=reason)

    # ------------------------------------------------------------------
    # Queueing

    def _enqueue(
        self,
        conversation: Conversation,
        *,
        queue_id: uuid.UUID | None = None,
        operator_id: uuid.UUID | None = None,
        priority: int | None = None,
        reason: str,
        **values: Any,
    ) -> TriageOutcome:
        """Move to ``queued``, create the entry and offer it to operators."""

        conversation = self._move(conversation, TriageState.QUEUED, commit=False, **values)
        entry = self._queue.enqueue(
            conversation.id,
            priority=priority_score(conversation.priority_tag) if priority is None else priority,
            queue_id=queue_id,
            operator_id=operator_id,
            reason=reason,
        )
        entry_id = entry.id
        self._session.commit()

        for result in self._matcher.drain(queue_id):
            if result.conversation_id == conversation.id:
                return TriageOutcome(
                    conversation.id,
                    TriageState.ROUTED,
                    operator_id=result.operator_id,
                    entry_id=entry_id,
                    detail=reason,
                )
        return TriageOutcome(conversation.id, TriageState.QUEUED, entry_id=entry_id, detail=reason)

    def _fallback(self, conversation: Conversation, *, reason: str) -> TriageOutcome:
        return self._enqueue(
            conversation, queue_id=self._settings.default_queue_id, reason=reason
        )

    def _ensure_waiting(self, conversation: Conversation) -> TriageOutcome:
        """Re-create a missing queue entry for a queued, unassigned conversation."""

        entry = self._queue.active_entry(conversation.id)
        if entry is not None:
            return self._outcome(conversation, entry_id=entry.id)
        return self._enqueue(
            conversation,
            queue_id=conversation.assigned_queue_id,
            reason="requeued by reconciliation",
        )

    def _fail(self, conversation: Conversation, exc: Exception) -> TriageOutcome:
        attempts = conversation.triage_attempts + 1
        error = f"{type(exc).__name__}: {exc}"[:500]
        if conversation.triage_state in (TriageState.QUEUED, TriageState.ROUTED):
            return self._outcome(conversation, detail=error)
        if attempts >= self._settings.triage_max_attempts:
            logger.error(
                "Triage of conversation %s failed %s times, forcing it into the queue",
                conversation.id,
                attempts,
            )
            return self._enqueue(
                conversation,
                queue_id=self._settings.default_queue_id,
                priority=URGENT_SCORE,
                reason=FAILED_TRIAGE_REASON,
                triage_attempts=attempts,
                triage_error=error,
                triage_retry_at=None,
            )
        retry_at = self._clock() + self._settings.backoff(attempts)
        conversation = self._move(
            conversation,
            TriageState.ERRORED,
            triage_attempts=attempts,
            triage_error=error,
            triage_retry_at=retry_at,
        )
        logger.warning(
            "Triage of conversation %s errored (attempt %s), retry at %s",
            conversation.id,
            attempts,
            retry_at.isoformat(),
        )
        return self._outcome(conversation, detail=error)

    # ------------------------------------------------------------------
    # Persistence helpers

    def _load(self, conversation_id: int) -> Conversation:
        conversation = self._session.execute(
            select(Conversation)
            .where(Conversation.id == conversation_id)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if conversation is None:
            raise ConversationNotFoundError(f"Conversation {conversation_id} not found")
        return conversation

    def _cas(self, conversation: Conversation, values: dict[str, Any]) -> None:
        result = self._session.execute(
            update(Conversation)
            .where(
                Conversation.id == conversation.id,
                Conversation.version == conversation.version,
            )
            .values(version=Conversation.version + 1, **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise StaleConversationError(
                f"Conversation {conversation.id} changed during triage"
            )

    def _move(
        self,
        conversation: Conversation,
        target: TriageState,
        *,
        commit: bool = True,
        **values: Any,
    ) -> Conversation:
        current = conversation.triage_state
        transition(current, target)
        now = self._clock()
        self._cas(conversation, {"triage_state": target, "triage_updated_at": now, **values})
        record_event(
            self._session,
            conversation.id,
            "triage_transition",
            f"{current.value} -> {target.value}",
            at=now,
            from_state=current,
            to_state=target,
        )
        logger.debug(
            "Conversation %s triage %s -> %s", conversation.id, current.value, target.value
        )
        if commit:
            self._session.commit()
        return self._load(conversation.id)

    def _annotate(self, conversation: Conversation, **values: Any) -> Conversation:
        self._cas(conversation, values)
        self._session.commit()
        return self._load(conversation.id)

    def _inbound_bodies(self, conversation_id: int, limit: int) -> list[str]:
        """Latest inbound message bodies, newest first."""

        return list(
            self._session.execute(
                select(ConversationMessage.body)
                .where(
                    ConversationMessage.conversation_id == conversation_id,
                    ConversationMessage.direction == MessageDirection.INBOUND,
                )
                .order_by(ConversationMessage.sent_at.desc(), ConversationMessage.id.desc())
                .limit(limit)
            ).scalars()
        )

    def _outcome(
        self,
        conversation: Conversation,
        *,
        entry_id: int | None = None,
        detail: str | None = None,
    ) -> TriageOutcome:
        return TriageOutcome(
            conversation_id=conversation.id,
            state=conversation.triage_state,
            operator_id=conversation.assigned_operator_id,
            entry_id=entry_id,
            detail=detail,
        )


__all__ = ["FAILED_TRIAGE_REASON", "TriageOutcome", "TriagePipeline"]
