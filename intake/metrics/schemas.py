"""Pydantic schemas for the BAM (business activity monitoring) snapshot."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field


class QueueWaitStats(BaseModel):
    waiting: int = 0
    avg_wait_seconds: float = 0.0
    max_wait_seconds: float = 0.0
    sla_breaches: int = 0


class MetricsSnapshot(BaseModel):
    """Derived, recomputable view over queue, operator and conversation state."""

    generated_at: datetime
    queue_total: int = 0
    queues: dict[str, QueueWaitStats] = Field(default_factory=dict)
    avg_wait_seconds: float = 0.0
    max_wait_seconds: float = 0.0
    sla_threshold_seconds: int
    sla_compliance_pct: float = 100.0
    sla_breaches: int = 0
    response_sla_breaches: int = 0
    resolution_sla_breaches: int = 0
    operators_by_status: dict[str, int] = Field(default_factory=dict)
    conversations_in_progress: int = 0
    assigned_today: int = 0
    sentiment: dict[str, int] = Field(default_factory=dict)
