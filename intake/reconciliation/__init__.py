"""Reconciliation Sweeper: the backstop for stuck or lost conversations."""

from .runner import SweepRunner, SweeperFactory
from .sla import SlaAlerts, SlaMonitor
from .sweeper import ReconciliationSweeper, SweepReport

__all__ = [
    "ReconciliationSweeper",
    "SlaAlerts",
    "SlaMonitor",
    "SweepReport",
    "SweepRunner",
    "SweeperFactory",
]
