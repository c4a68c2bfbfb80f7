"""WhatsApp Cloud API channel adapter."""

from __future__ import annotations

import hashlib
import hmac
from collections.abc import Iterable, Mapping
from datetime import datetime, timezone
from typing import Any

from ..conversations.models import NormalizedMessage
from .base import ChannelAdapter


class WhatsAppAdapter(ChannelAdapter):
    channel_name = "whatsapp"

    def verify_signature(
        self,
        body: bytes,
        headers: Mapping[str, str],
        config: Mapping[str, Any],
    ) -> bool:
        secret = (config or {}).get("webhook_secret")
        if not secret:
            return True
        received = headers.get("X-Hub-Signature-256") or headers.get("x-hub-signature-256")
        if not received:
            return False
        digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
        expected = f"sha256={digest}"
        return hmac.compare_digest(received, expected)

    def verify_subscription(
        self, params: Mapping[str, str], config: Mapping[str, Any]
    ) -> str | None:
        token = (config or {}).get("verify_token")
        if (
            token
            and params.get("hub.mode") == "subscribe"
            and hmac.compare_digest(params.get("hub.verify_token") or "", token)
        ):
            return params.get("hub.challenge") or ""
        return None

    def parse_incoming(
        self,
        payload: Mapping[str, Any],
        headers: Mapping[str, str],
        config: Mapping[str, Any],
    ) -> Iterable[NormalizedMessage]:
        entries = payload.get("entry", [])
        for entry in entries:
            for change in entry.get("changes", []):
                value = change.get("value", {})
                account = value.get("metadata", {})
                account_ref = account.get("phone_number_id") or entry.get("id") or ""
                contacts = {c.get("wa_id"): c for c in value.get("contacts", [])}
                # Delivery/read receipts arrive under "statuses" and carry no message.
                for message in value.get("messages", []):
                    sender_id = message.get("from") or ""
                    contact = contacts.get(sender_id, {})
                    name = contact.get("profile", {}).get("name")
                    text = ""
                    attachments = []
                    message_type = message.get("type")
                    if message_type == "text":
                        text = (message.get("text") or {}).get("body", "")
                    elif message_type in {"image", "audio", "video", "document"}:
                        media = message.get(message_type, {})
                        attachments.append({"type": message_type, **media})
                        text = media.get("caption", "")
                    elif message_type == "interactive":
                        interactive = message.get("interactive", {})
                        reply = interactive.get("button_reply") or interactive.get("list_reply") or {}
                        text = reply.get("title") or interactive.get("text") or ""
                    elif message_type == "button":
                        text = (message.get("button") or {}).get("text", "")
                    timestamp = message.get("timestamp")
                    if timestamp:
                        try:
                            sent_at = datetime.fromtimestamp(
                                int(timestamp), tz=timezone.utc
                            )
                        except (ValueError, TypeError):
                            sent_at = datetime.now(timezone.utc)
                    else:
                        sent_at = datetime.now(timezone.utc)
                    yield NormalizedMessage(
                        channel=self.channel_name,
                        channel_account_ref=str(account_ref),
                        contact_ref=str(sender_id),
                        contact_name=name,
                        text=text,
                        external_message_id=message.get("id"),
                        attachments=attachments,
                        metadata={
                            "message_type": message_type,
                            "display_phone_number": account.get("display_phone_number"),
                        },
                        sent_at=sent_at,
                    )
