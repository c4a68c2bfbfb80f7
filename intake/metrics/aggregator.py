"""Read-only operational metrics."""

from __future__ import annotations

from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from ..config import IntakeSettings
from ..core.clock import Clock, system_clock
from ..models import (
    Conversation,
    ConversationStatus,
    Operator,
    OperatorStatus,
    QueueEntry,
)
from ..reconciliation.sla import awaiting_reply
from .schemas import MetricsSnapshot, QueueWaitStats

UNTARGETED = "any"


class MetricsAggregator:
    """Computes :class:`MetricsSnapshot` on demand.

    Nothing here writes to the store; the snapshot can be thrown away and
    recomputed at any time.
    """

    def __init__(
        self,
        session: Session,
        settings: IntakeSettings,
        *,
        clock: Clock = system_clock,
    ) -> None:
        self._session = session
        self._settings = settings
        self._clock = clock
        self._tz = ZoneInfo(settings.operator_timezone)

    def snapshot(self, at: datetime | None = None) -> MetricsSnapshot:
        now = at or self._clock()
        sla = timedelta(seconds=self._settings.sla_wait_seconds)
        recent = now - timedelta(hours=self._settings.metrics_recent_hours)

        waiting = self._session.execute(
            select(QueueEntry.target_queue_id, QueueEntry.enqueued_at, QueueEntry.sla_breached)
            .where(QueueEntry.resolved_at.is_(None))
        ).all()
        queues: dict[str, QueueWaitStats] = {}
        waits: list[float] = []
        breaches = 0
        for queue_id, enqueued_at, flagged in waiting:
            wait = max((now - enqueued_at).total_seconds(), 0.0)
            breached = flagged or wait >= sla.total_seconds()
            waits.append(wait)
            breaches += int(breached)
            stats = queues.setdefault(str(queue_id) if queue_id else UNTARGETED, QueueWaitStats())
            stats.avg_wait_seconds = (stats.avg_wait_seconds * stats.waiting + wait) / (stats.waiting + 1)
            stats.waiting += 1
            stats.max_wait_seconds = max(stats.max_wait_seconds, wait)
            stats.sla_breaches += int(breached)

        resolved = self._session.execute(
            select(QueueEntry.enqueued_at, QueueEntry.claimed_at).where(
                QueueEntry.resolved_at.is_not(None),
                QueueEntry.resolved_operator_id.is_not(None),
                QueueEntry.claimed_at.is_not(None),
                QueueEntry.resolved_at >= recent,
            )
        ).all()
        within = sum(1 for enqueued_at, claimed_at in resolved if claimed_at - enqueued_at < sla)
        compliance = round(100.0 * within / len(resolved), 2) if resolved else 100.0

        statuses = {status.value: 0 for status in OperatorStatus}
        for status, count in self._session.execute(
            select(Operator.status, func.count(Operator.id))
            .where(Operator.is_active.is_(True))
            .group_by(Operator.status)
        ).all():
            statuses[status.value] = count

        in_progress = self._session.execute(
            select(func.count(Conversation.id)).where(
                Conversation.status == ConversationStatus.OPEN
            )
        ).scalar_one()

        response_breaches = self._session.execute(
            select(func.count(Conversation.id)).where(
                Conversation.status == ConversationStatus.OPEN,
                Conversation.assigned_operator_id.is_not(None),
                awaiting_reply(),
                Conversation.last_inbound_at
                <= now - timedelta(seconds=self._settings.sla_response_seconds),
            )
        ).scalar_one()
        resolution_breaches = self._session.execute(
            select(func.count(Conversation.id)).where(
                Conversation.status.in_((ConversationStatus.PENDING, ConversationStatus.OPEN)),
                Conversation.created_at
                <= now - timedelta(seconds=self._settings.sla_resolution_seconds),
            )
        ).scalar_one()

        local_midnight = now.astimezone(self._tz).replace(
            hour=0, minute=0, second=0, microsecond=0
        )
        assigned_today = self._session.execute(
            select(func.count(Conversation.id)).where(
                Conversation.assigned_at >= local_midnight
            )
        ).scalar_one()

        sentiment: dict[str, int] = {}
        for label, count in self._session.execute(
            select(Conversation.sentiment, func.count(Conversation.id))
            .where(Conversation.created_at >= recent)
            .group_by(Conversation.sentiment)
        ).all():
            sentiment[label or "unknown"] = count

        return MetricsSnapshot(
            generated_at=now,
            queue_total=len(waiting),
            queues=queues,
            avg_wait_seconds=sum(waits) / len(waits) if waits else 0.0,
            max_wait_seconds=max(waits, default=0.0),
            sla_threshold_seconds=self._settings.sla_wait_seconds,
            sla_compliance_pct=compliance,
            sla_breaches=breaches,
            response_sla_breaches=response_breaches,
            resolution_sla_breaches=resolution_breaches,
            operators_by_status=statuses,
            conversations_in_progress=in_progress,
            assigned_today=assigned_today,
            sentiment=sentiment,
        )


__all__ = ["MetricsAggregator", "UNTARGETED"]
