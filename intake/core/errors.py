"""Domain exceptions raised by the intake services.

Routers translate them into HTTP errors; internal retries (lost races,
transient classifier failures) never reach the caller of the triggering
event.
"""

from __future__ import annotations


class ConversationNotFoundError(LookupError):
    """Raised when a conversation could not be located."""


class OperatorNotFoundError(LookupError):
    """Raised when an operator could not be located."""


class AssignmentConflict(RuntimeError):
    """A compare-and-swap assignment lost a race; retry against fresh state.

    ``subject`` names the row whose guard failed: ``"operator"`` (retry with
    a fresh candidate), ``"conversation"`` or ``"entry"`` (someone else
    already took or closed it).
    """

    def __init__(self, message: str, *, subject: str = "operator") -> None:
        super().__init__(message)
        self.subject = subject


class OperatorUnavailableError(RuntimeError):
    """The operator is not online or has no free capacity."""


class InvalidTransitionError(ValueError):
    """Raised for a triage state change the state machine does not allow."""


class StaleConversationError(RuntimeError):
    """Another invocation advanced the conversation first."""


class ClassificationError(RuntimeError):
    """Base class for failures of the external classification service."""


class TransientClassificationError(ClassificationError):
    """Retryable failure (network error, 5xx, malformed response)."""


class ClassificationTimeout(TransientClassificationError):
    """The classifier did not answer within the configured timeout."""


class PermanentClassificationError(ClassificationError):
    """The classifier rejected the input; route to the fallback queue."""


class LookupTimeout(RuntimeError):
    """An external lookup exceeded its bounded timeout."""


__all__ = [
    "AssignmentConflict",
    "ClassificationError",
    "ClassificationTimeout",
    "ConversationNotFoundError",
    "InvalidTransitionError",
    "LookupTimeout",
    "OperatorNotFoundError",
    "OperatorUnavailableError",
    "PermanentClassificationError",
    "StaleConversationError",
    "TransientClassificationError",
]
