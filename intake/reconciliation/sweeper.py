"""Reconciliation sweeper.

One :meth:`ReconciliationSweeper.sweep` call is a full reconciliation cycle.
Every step goes through the same guarded operations as the live path
(triage compare-and-swap, one-entry-per-conversation index, atomic
assignment), so two sweepers running at once cannot duplicate entries or
assignments.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta

from sqlalchemy import and_, exists, or_, select
from sqlalchemy.orm import Session

from ..config import IntakeSettings
from ..core.clock import Clock, system_clock
from ..distribution.matcher import DistributionMatcher
from ..models import (
    Conversation,
    ConversationStatus,
    Operator,
    OperatorStatus,
    QueueEntry,
    TriageState,
)
from ..triage.pipeline import TriagePipeline
from .sla import SlaMonitor

logger = logging.getLogger(__name__)

_RESUMABLE = (
    TriageState.NEW,
    TriageState.WALLET_CHECK,
    TriageState.CUSTOMER_LINK_CHECK,
    TriageState.AI_CLASSIFYING,
)


@dataclass
class SweepReport:
    retried: list[int] = field(default_factory=list)
    resumed: list[int] = field(default_factory=list)
    requeued: list[int] = field(default_factory=list)
    released: list[int] = field(default_factory=list)
    escalated: list[int] = field(default_factory=list)
    response_breaches: list[int] = field(default_factory=list)
    resolution_breaches: list[int] = field(default_factory=list)
    rematched: list[int] = field(default_factory=list)
    drained: int = 0
    failures: int = 0

    def as_dict(self) -> dict[str, object]:
        return asdict(self)


class ReconciliationSweeper:
    def __init__(
        self,
        session: Session,
        settings: IntakeSettings,
        matcher: DistributionMatcher,
        pipeline: TriagePipeline,
        *,
        sla: SlaMonitor | None = None,
        clock: Clock = system_clock,
    ) -> None:
        self._session = session
        self._settings = settings
        self._matcher = matcher
        self._queue = matcher.queue
        self._pipeline = pipeline
        self._sla = sla or SlaMonitor(session, settings, clock=clock)
        self._clock = clock

    def sweep(self) -> SweepReport:
        report = SweepReport()
        now = self._clock()
        batch = self._settings.sweep_batch_size
        unassigned = and_(
            Conversation.assigned_operator_id.is_(None),
            Conversation.status.not_in((ConversationStatus.CLOSED, ConversationStatus.ARCHIVED)),
        )

        # Errored conversations whose retry deadline has passed.
        errored = self._ids(
            select(Conversation.id)
            .where(
                unassigned,
                Conversation.triage_state == TriageState.ERRORED,
                or_(
                    Conversation.triage_retry_at.is_(None),
                    Conversation.triage_retry_at <= now,
                ),
            )
            .order_by(Conversation.triage_retry_at.asc(), Conversation.id.asc())
            .limit(batch)
        )
        self._each(errored, self._pipeline.run, report.retried, report)

        # Invocations that died mid-triage, and identifier waits that timed out.
        stale_before = now - timedelta(seconds=self._settings.triage_stale_seconds)
        waited_before = now - timedelta(seconds=self._settings.identifier_wait_seconds)
        last_touch = Conversation.triage_updated_at
        stuck = self._ids(
            select(Conversation.id)
            .where(
                unassigned,
                or_(
                    and_(
                        Conversation.triage_state.in_(_RESUMABLE),
                        or_(
                            last_touch <= stale_before,
                            and_(last_touch.is_(None), Conversation.created_at <= stale_before),
                        ),
                    ),
                    and_(
                        Conversation.triage_state == TriageState.AWAITING_IDENTIFIER,
                        or_(
                            Conversation.identifier_requested_at <= waited_before,
                            and_(
                                Conversation.identifier_requested_at.is_(None),
                                last_touch <= stale_before,
                            ),
                        ),
                    ),
                ),
            )
            .order_by(Conversation.id.asc())
            .limit(batch)
        )
        self._each(stuck, self._pipeline.run, report.resumed, report)

        # Queued conversations that lost their entry.
        has_entry = exists().where(
            QueueEntry.conversation_id == Conversation.id,
            QueueEntry.resolved_at.is_(None),
        )
        orphaned = self._ids(
            select(Conversation.id)
            .where(unassigned, Conversation.triage_state == TriageState.QUEUED, ~has_entry)
            .order_by(Conversation.id.asc())
            .limit(batch)
        )
        self._each(orphaned, self._pipeline.run, report.requeued, report)

        # Open conversations held by operators gone offline (or deactivated).
        offline_before = now - timedelta(seconds=self._settings.offline_grace_seconds)
        absent = list(
            self._session.execute(
                select(Operator.id)
                .where(
                    or_(
                        Operator.is_active.is_(False),
                        and_(
                            Operator.status == OperatorStatus.OFFLINE,
                            or_(
                                Operator.status_changed_at.is_(None),
                                Operator.status_changed_at <= offline_before,
                            ),
                        ),
                    ),
                    exists().where(
                        Conversation.assigned_operator_id == Operator.id,
                        Conversation.status == ConversationStatus.OPEN,
                    ),
                )
                .order_by(Operator.id)
            ).scalars()
        )
        for operator_id in absent:
            try:
                report.released.extend(self._matcher.release_operator_conversations(operator_id))
            except Exception:
                self._session.rollback()
                report.failures += 1
                logger.exception("Releasing conversations of operator %s failed", operator_id)

        report.escalated = self._queue.escalate_breaches(now)
        self._session.commit()

        try:
            alerts = self._sla.check(now)
        except Exception:
            self._session.rollback()
            report.failures += 1
            logger.exception("SLA check failed")
        else:
            report.response_breaches = alerts.response
            report.resolution_breaches = alerts.resolution

        # Stale entries are rematched by the drain, in queue order.
        stale = {entry.id for entry in self._queue.stale_entries(now, limit=batch)}
        results = self._matcher.drain()
        for result in results:
            if result.entry_id in stale:
                report.rematched.append(result.conversation_id)
        report.drained = len(results) - len(report.rematched)
        self._count_skipped(stale, now)

        logger.info(
            "Sweep finished: retried=%s resumed=%s requeued=%s released=%s "
            "escalated=%s sla_response=%s sla_resolution=%s rematched=%s "
            "drained=%s failures=%s",
            len(report.retried),
            len(report.resumed),
            len(report.requeued),
            len(report.released),
            len(report.escalated),
            len(report.response_breaches),
            len(report.resolution_breaches),
            len(report.rematched),
            report.drained,
            report.failures,
        )
        return report

    def _count_skipped(self, stale: set[int], now: datetime) -> None:
        """Record an attempt on stale entries the drain did not try."""

        if not stale:
            return
        skipped = self._ids(
            select(QueueEntry.id).where(
                QueueEntry.id.in_(stale),
                QueueEntry.resolved_at.is_(None),
                or_(QueueEntry.last_attempt_at.is_(None), QueueEntry.last_attempt_at < now),
            )
        )
        for entry_id in skipped:
            self._queue.mark_attempt(entry_id, now)
        self._session.commit()

    def _ids(self, stmt) -> list[int]:
        return list(self._session.execute(stmt).scalars())

    def _each(
        self,
        ids: Iterable[int],
        action: Callable[[int], object],
        bucket: list[int],
        report: SweepReport,
    ) -> None:
        for conversation_id in ids:
            try:
                action(conversation_id)
            except Exception:
                self._session.rollback()
                report.failures += 1
                logger.exception("Reconciling conversation %s failed", conversation_id)
                continue
            bucket.append(conversation_id)


__all__ = ["ReconciliationSweeper", "SweepReport"]
