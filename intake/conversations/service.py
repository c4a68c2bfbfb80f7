"""High-level conversation flow orchestration."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from sqlalchemy.orm import Session

from ..core.clock import Clock, system_clock
from ..core.errors import ConversationNotFoundError, InvalidTransitionError
from ..distribution.matcher import DistributionMatcher
from ..models import ConversationStatus, MessageDirection, as_utc
from ..triage.pipeline import TriageOutcome, TriagePipeline
from ..window.tracker import WindowTracker
from . import schemas
from .models import NormalizedMessage
from .repository import ConversationRepository

logger = logging.getLogger(__name__)


class ConversationService:
    """Coordinates message persistence, the messaging window and triage."""

    def __init__(
        self,
        session: Session,
        repository: ConversationRepository,
        window: WindowTracker,
        pipeline: TriagePipeline,
        matcher: DistributionMatcher,
        *,
        clock: Clock = system_clock,
    ) -> None:
        self._session = session
        self._repository = repository
        self._window = window
        self._pipeline = pipeline
        self._matcher = matcher
        self._clock = clock

    # ------------------------------------------------------------------
    # Incoming message processing

    def process_incoming_message(
        self, normalized: NormalizedMessage
    ) -> schemas.MessageIngestResponse:
        """Persist an inbound message, refresh the window and triage if needed.

        The message and window update are committed before triage starts, so
        a triage failure can never lose the message.
        """

        sent_at = as_utc(normalized.sent_at)
        conversation = self._repository.find_active(
            normalized.channel, normalized.channel_account_ref, normalized.contact_ref
        )
        if conversation is None:
            conversation = self._repository.create_conversation(
                normalized.channel,
                normalized.channel_account_ref,
                normalized.contact_ref,
                contact_name=normalized.contact_name,
                priority_tag=normalized.priority_tag,
            )
            logger.info(
                "Created conversation %s for contact %s",
                conversation.id,
                normalized.contact_ref,
            )
        conversation_id = conversation.id
        self._repository.add_message(
            conversation_id,
            MessageDirection.INBOUND,
            normalized.text,
            {
                "external_message_id": normalized.external_message_id,
                "attachments": normalized.attachments,
                "metadata": normalized.metadata,
            },
            sent_at,
        )
        self._window.record_inbound(conversation_id, sent_at)
        self._session.commit()

        triage: schemas.TriageView | None = None
        conversation = self._repository.get_conversation(conversation_id)
        if conversation is not None and conversation.assigned_operator_id is None:
            triage = _triage_view(self._pipeline.run(conversation_id))
        return schemas.MessageIngestResponse(
            conversation=self.get_conversation(conversation_id), triage=triage
        )

    def record_outgoing_message(
        self,
        conversation_id: int,
        text: str,
        *,
        sent_at: datetime | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> schemas.ConversationDetail:
        """Persist an outbound message; the window deadline is never extended."""

        conversation = self._require(conversation_id)
        if conversation.status in (ConversationStatus.CLOSED, ConversationStatus.ARCHIVED):
            raise InvalidTransitionError(
                f"Conversation {conversation_id} is {conversation.status.value}"
            )
        at = as_utc(sent_at or self._clock())
        self._repository.add_message(
            conversation_id, MessageDirection.OUTBOUND, text, {"metadata": metadata or {}}, at
        )
        self._window.record_outbound(conversation_id, at)
        self._session.commit()
        return self.get_conversation(conversation_id)

    # ------------------------------------------------------------------
    # Queries and actions

    def get_conversation(
        self, conversation_id: int, *, message_limit: int = 50
    ) -> schemas.ConversationDetail:
        conversation = self._require(conversation_id)
        messages = self._repository.list_messages(conversation_id, limit=message_limit)
        return schemas.ConversationDetail(
            id=conversation.id,
            contact_ref=conversation.contact_ref,
            contact_name=conversation.contact_name,
            channel=conversation.channel,
            channel_account_ref=conversation.channel_account_ref,
            status=conversation.status,
            triage_state=conversation.triage_state,
            triage_attempts=conversation.triage_attempts,
            triage_retry_at=conversation.triage_retry_at,
            triage_error=conversation.triage_error,
            customer_ref=conversation.customer_ref,
            intent=conversation.intent,
            intent_confidence=conversation.intent_confidence,
            sentiment=conversation.sentiment,
            priority_tag=conversation.priority_tag,
            assigned_operator_id=conversation.assigned_operator_id,
            assigned_queue_id=conversation.assigned_queue_id,
            assigned_at=conversation.assigned_at,
            closed_at=conversation.closed_at,
            created_at=conversation.created_at,
            updated_at=conversation.updated_at,
            window=self._window.status(conversation_id),
            messages=[
                schemas.ConversationMessage(
                    id=m.id,
                    conversation_id=m.conversation_id,
                    direction=m.direction,
                    body=m.body,
                    sent_at=m.sent_at,
                )
                for m in messages
            ],
        )

    def close_conversation(self, conversation_id: int) -> schemas.ConversationDetail:
        self._require(conversation_id)
        self._matcher.close_conversation(conversation_id)
        return self.get_conversation(conversation_id)

    def _require(self, conversation_id: int):
        conversation = self._repository.get_conversation(conversation_id)
        if conversation is None:
            raise ConversationNotFoundError(f"Conversation {conversation_id} not found")
        return conversation


def _triage_view(outcome: TriageOutcome) -> schemas.TriageView:
    return schemas.TriageView(
        state=outcome.state,
        operator_id=outcome.operator_id,
        entry_id=outcome.entry_id,
        detail=outcome.detail,
    )


__all__ = ["ConversationService"]
