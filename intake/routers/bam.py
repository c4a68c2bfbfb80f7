"""Business activity monitoring and reconciliation routes."""

from __future__ import annotations

from fastapi import APIRouter, Request

from ..metrics.schemas import MetricsSnapshot
from .context import service_context

router = APIRouter(tags=["bam"])


@router.get("/api/bam", response_model=MetricsSnapshot)
def bam_snapshot(request: Request) -> MetricsSnapshot:
    """Live queue, SLA and operator figures computed from the store."""
    with service_context(request) as services:
        return services.metrics.snapshot()


@router.post("/api/sweep")
def run_sweep(request: Request) -> dict[str, object]:
    """Run one reconciliation pass immediately."""
    with service_context(request) as services:
        return services.sweeper.sweep().as_dict()
