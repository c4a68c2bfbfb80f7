import pytest

from intake.core.errors import InvalidTransitionError
from intake.models import TriageState as S
from intake.triage.states import (
    ALLOWED_TRANSITIONS,
    can_transition,
    is_intermediate,
    transition,
)


@pytest.mark.parametrize(
    "current,target",
    [
        (S.NEW, S.WALLET_CHECK),
        (S.WALLET_CHECK, S.CUSTOMER_LINK_CHECK),
        (S.CUSTOMER_LINK_CHECK, S.AWAITING_IDENTIFIER),
        (S.AWAITING_IDENTIFIER, S.AI_CLASSIFYING),
        (S.AI_CLASSIFYING, S.QUEUED),
        (S.AI_CLASSIFYING, S.ERRORED),
        (S.ERRORED, S.WALLET_CHECK),
        (S.ERRORED, S.QUEUED),
        (S.QUEUED, S.ROUTED),
        (S.ROUTED, S.QUEUED),
    ],
)
def test_allowed_transitions(current, target):
    assert transition(current, target) is target


@pytest.mark.parametrize(
    "current,target",
    [
        (S.NEW, S.AI_CLASSIFYING),
        (S.WALLET_CHECK, S.NEW),
        (S.AI_CLASSIFYING, S.WALLET_CHECK),
        (S.QUEUED, S.ERRORED),
        (S.ROUTED, S.NEW),
    ],
)
def test_rejected_transitions(current, target):
    assert not can_transition(current, target)
    with pytest.raises(InvalidTransitionError):
        transition(current, target)


def test_every_state_is_covered():
    assert set(ALLOWED_TRANSITIONS) == set(S)


def test_routed_reachable_from_every_non_terminal_state():
    for state in S:
        assert can_transition(state, S.ROUTED)


def test_intermediate_states():
    assert is_intermediate(S.AWAITING_IDENTIFIER)
    assert not is_intermediate(S.QUEUED)
    assert not is_intermediate(S.ERRORED)
