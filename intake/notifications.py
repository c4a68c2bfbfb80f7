"""Operator notification sinks.

Notifications are fire-and-forget: they are sent after the assignment has
been committed and a failure never undoes it. The operator still sees the
conversation in their assignment view.
"""

from __future__ import annotations

import logging
import uuid
from typing import Protocol

import requests

logger = logging.getLogger(__name__)

ASSIGNED_EVENT = "conversation.assigned"
SLA_RESPONSE_EVENT = "conversation.sla_response_breached"


class Notifier(Protocol):
    def notify(
        self, operator_id: uuid.UUID, conversation_id: int, event: str = ASSIGNED_EVENT
    ) -> None: ...


class LoggingNotifier:
    """Notifier that only writes a log line; the default for local runs."""

    def notify(
        self, operator_id: uuid.UUID, conversation_id: int, event: str = ASSIGNED_EVENT
    ) -> None:
        logger.info(
            "Notify operator %s about conversation %s (%s)",
            operator_id,
            conversation_id,
            event,
        )


class WebhookNotifier:
    """POST ``{"event", "operator_id", "conversation_id"}`` to a configured URL."""

    def __init__(
        self,
        url: str,
        *,
        session: requests.Session | None = None,
        timeout: float = 5.0,
    ) -> None:
        self.url = url
        self.session = session or requests.Session()
        self.timeout = timeout

    def notify(
        self, operator_id: uuid.UUID, conversation_id: int, event: str = ASSIGNED_EVENT
    ) -> None:
        response = self.session.post(
            self.url,
            json={
                "event": event,
                "operator_id": str(operator_id),
                "conversation_id": conversation_id,
            },
            timeout=self.timeout,
        )
        response.raise_for_status()


def safe_notify(
    notifier: Notifier,
    operator_id: uuid.UUID,
    conversation_id: int,
    *,
    event: str = ASSIGNED_EVENT,
) -> bool:
    """Deliver a notification, logging instead of raising on failure."""

    try:
        notifier.notify(operator_id, conversation_id, event=event)
    except Exception as exc:  # noqa: BLE001 - delivery never affects assignment
        logger.warning(
            "Notification %s for conversation %s to operator %s failed: %s",
            event,
            conversation_id,
            operator_id,
            exc,
        )
        return False
    return True


__all__ = [
    "ASSIGNED_EVENT",
    "LoggingNotifier",
    "Notifier",
    "SLA_RESPONSE_EVENT",
    "WebhookNotifier",
    "safe_notify",
]
