"""Conversation intake: inbound/outbound message events."""

from .models import NormalizedMessage
from .repository import ConversationRepository, SqlConversationRepository
from .service import ConversationService

__all__ = [
    "ConversationRepository",
    "ConversationService",
    "NormalizedMessage",
    "SqlConversationRepository",
]
