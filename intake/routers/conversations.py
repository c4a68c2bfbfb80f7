"""Conversation intake and management API routes."""

from fastapi import APIRouter, Request

from ..conversations import schemas as convo_schemas
from ..conversations.models import NormalizedMessage
from ..distribution.schemas import AssignmentView, ManualAssignRequest
from ..models import as_utc
from ..window.schemas import WindowExpireRequest, WindowView
from .context import INBOUND_RATE_LIMIT, limiter, request_clock, service_context

router = APIRouter(tags=["conversations"])


@router.post(
    "/api/conversations/inbound",
    response_model=convo_schemas.MessageIngestResponse,
)
@limiter.limit(INBOUND_RATE_LIMIT)
def ingest_message(
    request: Request, payload: convo_schemas.InboundMessageRequest
) -> convo_schemas.MessageIngestResponse:
    """Record an inbound message and triage its conversation if unassigned."""
    normalized = NormalizedMessage(
        channel=payload.channel,
        channel_account_ref=payload.channel_account_ref,
        contact_ref=payload.contact_ref,
        text=payload.text,
        contact_name=payload.contact_name,
        priority_tag=payload.priority_tag,
        metadata=payload.metadata,
        sent_at=as_utc(payload.sent_at or request_clock(request)()),
    )
    with service_context(request) as services:
        return services.conversations.process_incoming_message(normalized)


@router.post(
    "/api/conversations/{conversation_id}/outbound",
    response_model=convo_schemas.ConversationDetail,
)
def send_message(
    conversation_id: int,
    payload: convo_schemas.OutboundMessageRequest,
    request: Request,
) -> convo_schemas.ConversationDetail:
    with service_context(request) as services:
        return services.conversations.record_outgoing_message(
            conversation_id,
            payload.text,
            sent_at=payload.sent_at,
            metadata=payload.metadata,
        )


@router.get(
    "/api/conversations/{conversation_id}",
    response_model=convo_schemas.ConversationDetail,
)
def get_conversation(
    conversation_id: int, request: Request, limit: int = 50
) -> convo_schemas.ConversationDetail:
    with service_context(request) as services:
        return services.conversations.get_conversation(
            conversation_id, message_limit=limit
        )


@router.get("/api/conversations/{conversation_id}/window", response_model=WindowView)
def get_window(conversation_id: int, request: Request) -> WindowView:
    with service_context(request) as services:
        return services.window.status(conversation_id)


@router.post(
    "/api/conversations/{conversation_id}/window/expire", response_model=WindowView
)
def expire_window(
    conversation_id: int, payload: WindowExpireRequest, request: Request
) -> WindowView:
    """Shorten the window when the provider reports it closed early."""
    with service_context(request) as services:
        return services.window.expire(conversation_id, payload.at)


@router.post(
    "/api/conversations/{conversation_id}/assign", response_model=AssignmentView
)
def assign_conversation(
    conversation_id: int, payload: ManualAssignRequest, request: Request
) -> AssignmentView:
    """Assign or transfer a conversation to a specific operator."""
    with service_context(request) as services:
        result = services.matcher.assign_manually(conversation_id, payload.operator_id)
        return AssignmentView.from_result(result)


@router.post(
    "/api/conversations/{conversation_id}/close",
    response_model=convo_schemas.ConversationDetail,
)
def close_conversation(
    conversation_id: int, request: Request
) -> convo_schemas.ConversationDetail:
    with service_context(request) as services:
        return services.conversations.close_conversation(conversation_id)
