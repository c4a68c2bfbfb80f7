"""Operator Registry: availability, working hours and derived load."""

from .registry import AvailabilityListener, OperatorRegistry, within_working_hours
from .schemas import (
    EligibilityContext,
    OperatorCandidate,
    OperatorList,
    OperatorView,
    ReleaseResponse,
    StatusUpdateRequest,
)

__all__ = [
    "AvailabilityListener",
    "EligibilityContext",
    "OperatorCandidate",
    "OperatorList",
    "OperatorRegistry",
    "OperatorView",
    "ReleaseResponse",
    "StatusUpdateRequest",
    "within_working_hours",
]
