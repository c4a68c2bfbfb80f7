"""Database repository for conversations."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Protocol

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..core.clock import Clock, system_clock
from ..models import (
    Conversation,
    ConversationMessage,
    ConversationStatus,
    MessageDirection,
    PriorityTag,
)


class ConversationRepository(Protocol):
    """Abstraction for persisting conversation artefacts."""

    def find_active(
        self, channel: str, channel_account_ref: str, contact_ref: str
    ) -> Conversation | None: ...

    def create_conversation(
        self,
        channel: str,
        channel_account_ref: str,
        contact_ref: str,
        *,
        contact_name: str | None = None,
        priority_tag: PriorityTag | None = None,
    ) -> Conversation: ...

    def add_message(
        self,
        conversation_id: int,
        direction: MessageDirection,
        body: str,
        payload: dict[str, Any],
        sent_at: datetime,
    ) -> ConversationMessage: ...

    def get_conversation(self, conversation_id: int) -> Conversation | None: ...

    def list_messages(
        self, conversation_id: int, limit: int = 50
    ) -> list[ConversationMessage]: ...


class SqlConversationRepository:
    """SQLAlchemy implementation of :class:`ConversationRepository`."""

    def __init__(self, session: Session, *, clock: Clock = system_clock) -> None:
        self._session = session
        self._clock = clock

    def find_active(
        self, channel: str, channel_account_ref: str, contact_ref: str
    ) -> Conversation | None:
        return self._session.execute(
            select(Conversation)
            .where(
                Conversation.channel == channel,
                Conversation.channel_account_ref == channel_account_ref,
                Conversation.contact_ref == contact_ref,
                Conversation.status.in_(
                    (ConversationStatus.PENDING, ConversationStatus.OPEN)
                ),
            )
            .order_by(Conversation.created_at.desc(), Conversation.id.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def create_conversation(
        self,
        channel: str,
        channel_account_ref: str,
        contact_ref: str,
        *,
        contact_name: str | None = None,
        priority_tag: PriorityTag | None = None,
    ) -> Conversation:
        now = self._clock()
        conversation = Conversation(
            channel=channel,
            channel_account_ref=channel_account_ref,
            contact_ref=contact_ref,
            contact_name=contact_name,
            priority_tag=priority_tag or PriorityTag.NORMAL,
            created_at=now,
            updated_at=now,
        )
        self._session.add(conversation)
        self._session.flush()
        return conversation

    def add_message(
        self,
        conversation_id: int,
        direction: MessageDirection,
        body: str,
        payload: dict[str, Any],
        sent_at: datetime,
    ) -> ConversationMessage:
        message = ConversationMessage(
            conversation_id=conversation_id,
            direction=direction,
            body=body,
            payload=payload,
            sent_at=sent_at,
        )
        self._session.add(message)
        self._session.flush()
        return message

    def get_conversation(self, conversation_id: int) -> Conversation | None:
        return self._session.execute(
            select(Conversation)
            .where(Conversation.id == conversation_id)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def list_messages(
        self, conversation_id: int, limit: int = 50
    ) -> list[ConversationMessage]:
        rows = self._session.execute(
            select(ConversationMessage)
            .where(ConversationMessage.conversation_id == conversation_id)
            .order_by(ConversationMessage.sent_at.desc(), ConversationMessage.id.desc())
            .limit(limit)
        ).scalars()
        return list(reversed(list(rows)))
