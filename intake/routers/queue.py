"""Waiting queue inspection and draining routes."""

from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Request

from ..distribution.schemas import AssignmentView, DrainResponse, QueueView
from .context import request_clock, service_context

router = APIRouter(tags=["queue"])


@router.get("/api/queue", response_model=QueueView)
def list_queue(
    request: Request, queue_id: UUID | None = None, limit: int = 100
) -> QueueView:
    now = request_clock(request)()
    with service_context(request) as services:
        entries = services.queue.pending(queue_id)
        return QueueView(
            items=[services.queue.view(entry, now) for entry in entries[:limit]],
            total=len(entries),
        )


@router.post("/api/queue/drain", response_model=DrainResponse)
def drain_queue(request: Request, queue_id: UUID | None = None) -> DrainResponse:
    with service_context(request) as services:
        results = services.matcher.drain(queue_id)
        return DrainResponse(
            assigned=[AssignmentView.from_result(result) for result in results]
        )
