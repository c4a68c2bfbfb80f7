"""Metrics Aggregator (BAM)."""

from .aggregator import UNTARGETED, MetricsAggregator
from .schemas import MetricsSnapshot, QueueWaitStats

__all__ = ["MetricsAggregator", "MetricsSnapshot", "QueueWaitStats", "UNTARGETED"]
