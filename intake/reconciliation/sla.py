"""Response and resolution SLA checks for conversations being served.

A conversation breaches the response SLA when its latest inbound message
has gone unanswered for ``sla_response_seconds``, and the resolution SLA
when it has been open for ``sla_resolution_seconds``. Each breach is
recorded once in ``conversation_events``; a newer unanswered inbound
message arms the response alert again.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from sqlalchemy import and_, or_, select, update
from sqlalchemy.orm import Session

from ..config import IntakeSettings
from ..core.audit import record_event
from ..core.clock import Clock, system_clock
from ..models import Conversation, ConversationStatus
from ..notifications import SLA_RESPONSE_EVENT, LoggingNotifier, Notifier, safe_notify

logger = logging.getLogger(__name__)

_ACTIVE = (ConversationStatus.PENDING, ConversationStatus.OPEN)


def awaiting_reply():
    """The latest inbound message has no later outbound reply."""

    return and_(
        Conversation.last_inbound_at.is_not(None),
        or_(
            Conversation.last_outbound_at.is_(None),
            Conversation.last_outbound_at < Conversation.last_inbound_at,
        ),
    )


@dataclass
class SlaAlerts:
    response: list[int] = field(default_factory=list)
    resolution: list[int] = field(default_factory=list)


class SlaMonitor:
    def __init__(
        self,
        session: Session,
        settings: IntakeSettings,
        *,
        notifier: Notifier | None = None,
        clock: Clock = system_clock,
    ) -> None:
        self._session = session
        self._settings = settings
        self._notifier = notifier or LoggingNotifier()
        self._clock = clock

    def check(self, at: datetime | None = None) -> SlaAlerts:
        now = at or self._clock()
        alerts = SlaAlerts()
        to_notify: list[tuple[uuid.UUID, int]] = []

        response_limit = timedelta(seconds=self._settings.sla_response_seconds)
        not_alerted = or_(
            Conversation.response_alerted_at.is_(None),
            Conversation.response_alerted_at < Conversation.last_inbound_at,
        )
        late = self._session.execute(
            select(
                Conversation.id,
                Conversation.assigned_operator_id,
                Conversation.last_inbound_at,
            )
            .where(
                Conversation.status == ConversationStatus.OPEN,
                Conversation.assigned_operator_id.is_not(None),
                awaiting_reply(),
                Conversation.last_inbound_at <= now - response_limit,
                not_alerted,
            )
            .order_by(Conversation.last_inbound_at.asc(), Conversation.id.asc())
            .limit(self._settings.sweep_batch_size)
        ).all()
        for conversation_id, operator_id, inbound_at in late:
            claimed = self._session.execute(
                update(Conversation)
                .where(Conversation.id == conversation_id, not_alerted)
                .values(response_alerted_at=now)
            )
            if not claimed.rowcount:
                continue
            waited = int((now - inbound_at).total_seconds())
            record_event(
                self._session,
                conversation_id,
                "sla_response_breached",
                f"no reply for {waited // 60} min (limit {self._settings.sla_response_seconds // 60} min)",
                operator_id=operator_id,
                at=now,
                waited_seconds=waited,
                limit_seconds=self._settings.sla_response_seconds,
            )
            alerts.response.append(conversation_id)
            to_notify.append((operator_id, conversation_id))

        resolution_limit = timedelta(seconds=self._settings.sla_resolution_seconds)
        overdue = self._session.execute(
            select(Conversation.id, Conversation.assigned_operator_id, Conversation.created_at)
            .where(
                Conversation.status.in_(_ACTIVE),
                Conversation.created_at <= now - resolution_limit,
                Conversation.resolution_alerted_at.is_(None),
            )
            .order_by(Conversation.created_at.asc(), Conversation.id.asc())
            .limit(self._settings.sweep_batch_size)
        ).all()
        for conversation_id, operator_id, created_at in overdue:
            claimed = self._session.execute(
                update(Conversation)
                .where(
                    Conversation.id == conversation_id,
                    Conversation.resolution_alerted_at.is_(None),
                )
                .values(resolution_alerted_at=now)
            )
            if not claimed.rowcount:
                continue
            open_for = int((now - created_at).total_seconds())
            record_event(
                self._session,
                conversation_id,
                "sla_resolution_breached",
                f"open for {open_for // 3600} h (limit {self._settings.sla_resolution_seconds // 3600} h)",
                operator_id=operator_id,
                at=now,
                open_seconds=open_for,
                limit_seconds=self._settings.sla_resolution_seconds,
            )
            alerts.resolution.append(conversation_id)

        self._session.commit()
        if alerts.response or alerts.resolution:
            logger.warning(
                "SLA breached: response=%s resolution=%s",
                alerts.response,
                alerts.resolution,
            )
        for operator_id, conversation_id in to_notify:
            safe_notify(self._notifier, operator_id, conversation_id, event=SLA_RESPONSE_EVENT)
        return alerts


__all__ = ["SlaAlerts", "SlaMonitor", "awaiting_reply"]
