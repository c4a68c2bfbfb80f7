"""Enumerations persisted by the distribution tables."""

from __future__ import annotations

from enum import Enum


class OperatorStatus(str, Enum):
    """Live availability of an operator."""

    ONLINE = "online"
    BUSY = "busy"
    AWAY = "away"
    OFFLINE = "offline"


class ConversationStatus(str, Enum):
    """Lifecycle of a conversation; conversations are never deleted."""

    PENDING = "pending"
    OPEN = "open"
    CLOSED = "closed"
    ARCHIVED = "archived"


class TriageState(str, Enum):
    """Stages of the triage pipeline (see :mod:`intake.triage.states`)."""

    NEW = "new"
    WALLET_CHECK = "wallet_check"
    CUSTOMER_LINK_CHECK = "customer_link_check"
    AWAITING_IDENTIFIER = "awaiting_identifier"
    AI_CLASSIFYING = "ai_classifying"
    ROUTED = "routed"
    QUEUED = "queued"
    ERRORED = "errored"


class PriorityTag(str, Enum):
    """Coarse priority labels; :data:`PRIORITY_SCORES` maps them to scores."""

    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


PRIORITY_SCORES: dict[PriorityTag, int] = {
    PriorityTag.LOW: 0,
    PriorityTag.NORMAL: 10,
    PriorityTag.HIGH: 20,
    PriorityTag.URGENT: 30,
}


class MessageDirection(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class ConditionType(str, Enum):
    """Kinds of routing rule conditions."""

    SCHEDULE = "schedule"
    ORIGIN = "origin"
    KEYWORD = "keyword"
    SECTOR = "sector"
    INTENT = "intent"


class DestinationType(str, Enum):
    OPERATOR = "operator"
    QUEUE = "queue"
    UNIT = "unit"


class WalletMode(str, Enum):
    """How strictly a contact's wallet operator is honoured.

    ``preferential`` falls through to the rest of triage when the wallet
    operator cannot take the conversation; ``forced`` parks it in the wait
    queue targeted at that operator.
    """

    PREFERENTIAL = "preferential"
    FORCED = "forced"


def priority_score(tag: PriorityTag | str | None) -> int:
    """Return the numeric queue score for a priority tag."""

    if tag is None:
        return PRIORITY_SCORES[PriorityTag.NORMAL]
    return PRIORITY_SCORES[PriorityTag(tag)]


__all__ = [
    "ConditionType",
    "ConversationStatus",
    "DestinationType",
    "MessageDirection",
    "OperatorStatus",
    "PRIORITY_SCORES",
    "PriorityTag",
    "TriageState",
    "WalletMode",
    "priority_score",
]
