"""Triage state machine.

::

    new -> wallet_check -> customer_link_check -> awaiting_identifier
        -> ai_classifying -> routed | queued

Any intermediate state may fall to ``errored``; ``errored`` re-enters at
``wallet_check`` (retry) or ``queued`` (forced fallback). ``routed`` is
reachable from every non-terminal state because an assignment, automatic or
manual, always ends triage.
"""

from __future__ import annotations

from types import MappingProxyType

from ..core.errors import InvalidTransitionError
from ..models.enums import TriageState

S = TriageState

INTERMEDIATE = frozenset(
    {S.NEW, S.WALLET_CHECK, S.CUSTOMER_LINK_CHECK, S.AWAITING_IDENTIFIER, S.AI_CLASSIFYING}
)

ALLOWED_TRANSITIONS = MappingProxyType(
    {
        S.NEW: frozenset({S.WALLET_CHECK, S.ROUTED, S.QUEUED, S.ERRORED}),
        S.WALLET_CHECK: frozenset(
            {S.CUSTOMER_LINK_CHECK, S.ROUTED, S.QUEUED, S.ERRORED}
        ),
        S.CUSTOMER_LINK_CHECK: frozenset(
            {S.AWAITING_IDENTIFIER, S.AI_CLASSIFYING, S.ROUTED, S.QUEUED, S.ERRORED}
        ),
        S.AWAITING_IDENTIFIER: frozenset(
            {S.AWAITING_IDENTIFIER, S.AI_CLASSIFYING, S.ROUTED, S.QUEUED, S.ERRORED}
        ),
        S.AI_CLASSIFYING: frozenset({S.ROUTED, S.QUEUED, S.ERRORED}),
        S.ERRORED: frozenset({S.WALLET_CHECK, S.ROUTED, S.QUEUED, S.ERRORED}),
        S.QUEUED: frozenset({S.ROUTED, S.QUEUED}),
        S.ROUTED: frozenset({S.ROUTED, S.QUEUED}),
    }
)


def can_transition(current: TriageState, target: TriageState) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def transition(current: TriageState, target: TriageState) -> TriageState:
    """Validate ``current -> target`` and return ``target``."""

    if not can_transition(current, target):
        raise InvalidTransitionError(
            f"Triage cannot move from {current.value} to {target.value}"
        )
    return target


def is_intermediate(state: TriageState) -> bool:
    return state in INTERMEDIATE


__all__ = [
    "ALLOWED_TRANSITIONS",
    "INTERMEDIATE",
    "can_transition",
    "is_intermediate",
    "transition",
]
