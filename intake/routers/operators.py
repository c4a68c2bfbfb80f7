"""Operator availability API routes."""

from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Request

from ..operators import schemas as operator_schemas
from .context import service_context

router = APIRouter(tags=["operators"])


@router.get("/api/operators", response_model=operator_schemas.OperatorList)
def list_operators(request: Request) -> operator_schemas.OperatorList:
    with service_context(request) as services:
        items = services.registry.list_operators()
        return operator_schemas.OperatorList(items=items, total=len(items))


@router.put(
    "/api/operators/{operator_id}/status",
    response_model=operator_schemas.OperatorView,
)
def update_status(
    operator_id: UUID,
    payload: operator_schemas.StatusUpdateRequest,
    request: Request,
) -> operator_schemas.OperatorView:
    """Change availability; coming online drains the waiting queue."""
    with service_context(request) as services:
        services.registry.set_status(operator_id, payload.status)
        return services.registry.describe(operator_id)


@router.post(
    "/api/operators/{operator_id}/release",
    response_model=operator_schemas.ReleaseResponse,
)
def release_operator(
    operator_id: UUID, request: Request
) -> operator_schemas.ReleaseResponse:
    """Re-queue every open conversation held by the operator."""
    with service_context(request) as services:
        requeued = services.matcher.release_operator_conversations(operator_id)
        return operator_schemas.ReleaseResponse(
            operator_id=operator_id, requeued_conversation_ids=requeued
        )
