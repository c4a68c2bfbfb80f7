"""Priority wait queue, distribution matcher and atomic assignment."""

from .assignment import AssignmentGuard
from .matcher import DistributionMatcher
from .queue import URGENT_SCORE, WaitQueue
from .schemas import (
    AssignmentResult,
    AssignmentView,
    DrainResponse,
    ManualAssignRequest,
    QueueEntryView,
    QueueView,
)

__all__ = [
    "AssignmentGuard",
    "AssignmentResult",
    "AssignmentView",
    "DistributionMatcher",
    "DrainResponse",
    "ManualAssignRequest",
    "QueueEntryView",
    "QueueView",
    "URGENT_SCORE",
    "WaitQueue",
]
