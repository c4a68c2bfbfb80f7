"""SQLAlchemy declarative base and distribution models.

This package hosts the SQLAlchemy models used across the service. It exposes
a single declarative ``Base`` class; individual models live in dedicated
modules within this package. The store is the single source of truth: no
in-process state is needed for correctness after a crash.
"""

from __future__ import annotations

from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy declarative models."""


# Re-export the models so callers can import them via
# ``from intake.models import Conversation`` instead of touching submodules.
from .conversation import (  # noqa: E402
    Conversation,
    ConversationEvent,
    ConversationMessage,
    QueueEntry,
)
from .enums import (  # noqa: E402
    ConditionType,
    ConversationStatus,
    DestinationType,
    MessageDirection,
    OperatorStatus,
    PriorityTag,
    TriageState,
    WalletMode,
    priority_score,
)
from .operator import ContactWallet, Operator, QueueMembership, ServiceQueue  # noqa: E402
from .routing import RoutingRule  # noqa: E402
from .types import as_utc, utcnow  # noqa: E402

__all__ = [
    "Base",
    "ConditionType",
    "ContactWallet",
    "Conversation",
    "ConversationEvent",
    "ConversationMessage",
    "ConversationStatus",
    "DestinationType",
    "MessageDirection",
    "Operator",
    "OperatorStatus",
    "PriorityTag",
    "QueueEntry",
    "QueueMembership",
    "RoutingRule",
    "ServiceQueue",
    "TriageState",
    "WalletMode",
    "as_utc",
    "priority_score",
    "utcnow",
]
