"""Webhook ingestion routes for external messaging channels."""

import asyncio
import json
import logging
from typing import Any

from fastapi import APIRouter, HTTPException, Request, Response, status
from fastapi.responses import PlainTextResponse

from ..channels import get_adapter
from ..channels.base import ChannelAdapter
from ..config import IntakeSettings
from ..conversations import NormalizedMessage
from .context import INBOUND_RATE_LIMIT, limiter, service_context

router = APIRouter(tags=["webhooks"])

logger = logging.getLogger(__name__)


def _channel_config(settings: IntakeSettings, channel: str) -> dict[str, Any]:
    if channel == "whatsapp":
        return {
            "webhook_secret": settings.whatsapp_app_secret,
            "verify_token": settings.whatsapp_verify_token,
        }
    return {}


def _adapter(channel: str) -> ChannelAdapter:
    try:
        adapter_cls = get_adapter(channel)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return adapter_cls()


@router.get("/api/webhooks/{channel}", response_class=PlainTextResponse)
def verify_webhook(channel: str, request: Request) -> PlainTextResponse:
    """Answer the provider's subscription handshake."""
    channel_name = channel.lower()
    adapter = _adapter(channel_name)
    config = _channel_config(request.app.state.settings, channel_name)
    challenge = adapter.verify_subscription(request.query_params, config)
    if challenge is None:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN, detail="Verification failed"
        )
    return PlainTextResponse(challenge)


@router.post("/api/webhooks/{channel}")
@limiter.limit(INBOUND_RATE_LIMIT)
async def ingest_webhook(channel: str, request: Request) -> Response:
    body_bytes = await request.body()
    try:
        payload = json.loads(body_bytes.decode("utf-8")) if body_bytes else {}
    except json.JSONDecodeError as exc:
        raise HTTPException(
            status_code=400, detail=f"Invalid JSON payload: {exc}"
        ) from exc

    channel_name = channel.lower()
    adapter = _adapter(channel_name)
    config = _channel_config(request.app.state.settings, channel_name)
    if not adapter.verify_signature(body_bytes, request.headers, config):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid signature"
        )
    normalized_messages = list(adapter.parse_incoming(payload, request.headers, config))
    if not normalized_messages:
        return Response(status_code=status.HTTP_202_ACCEPTED)

    return await asyncio.to_thread(_process, request, channel_name, normalized_messages)


def _process(
    request: Request, channel_name: str, normalized_messages: list[NormalizedMessage]
) -> Response:
    with service_context(request) as services:
        processed = 0
        last_response = None
        for normalized in normalized_messages:
            last_response = services.conversations.process_incoming_message(normalized)
            processed += 1
        logger.info("Processed %s %s webhook messages", processed, channel_name)
        return Response(
            content=last_response.model_copy(
                update={"processed_messages": processed}
            ).model_dump_json(),
            media_type="application/json",
        )
