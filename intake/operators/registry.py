"""Operator registry: availability, derived load and candidate selection."""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Iterable
from datetime import datetime, time, timezone
from zoneinfo import ZoneInfo

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from ..config import IntakeSettings
from ..core.clock import Clock, system_clock
from ..core.errors import OperatorNotFoundError
from ..models import (
    ContactWallet,
    Conversation,
    ConversationStatus,
    Operator,
    OperatorStatus,
    QueueMembership,
)
from .schemas import EligibilityContext, OperatorCandidate, OperatorView

logger = logging.getLogger(__name__)

AvailabilityListener = Callable[[uuid.UUID], None]

_NEVER = datetime(1970, 1, 1, tzinfo=timezone.utc)


def within_working_hours(start: time | None, end: time | None, local: time) -> bool:
    """Return whether ``local`` falls inside ``[start, end)``.

    Missing bounds mean "always". ``start > end`` describes an overnight
    shift (e.g. 22:00-06:00).
    """

    if start is None or end is None:
        return True
    if start <= end:
        return start <= local < end
    return local >= start or local < end


class OperatorRegistry:
    """Tracks operator availability and computes load from assignments.

    Load is always derived by counting open conversations assigned to the
    operator; there is no stored counter that could drift.
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
        self._listeners: list[AvailabilityListener] = []

    # ------------------------------------------------------------------
    # Availability

    def add_availability_listener(self, listener: AvailabilityListener) -> None:
        """Register a callback fired when an operator may take new work."""

        self._listeners.append(listener)

    def get_operator(self, operator_id: uuid.UUID) -> Operator:
        operator = self._session.execute(
            select(Operator)
            .where(Operator.id == operator_id)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if operator is None:
            raise OperatorNotFoundError(f"Operator {operator_id} not found")
        return operator

    def set_status(self, operator_id: uuid.UUID, status: OperatorStatus) -> Operator:
        """Persist a status change; going online triggers queue draining."""

        operator = self.get_operator(operator_id)
        previous = operator.status
        self._session.execute(
            update(Operator)
            .where(Operator.id == operator_id)
            .values(status=status, status_changed_at=self._clock())
        )
        self._session.commit()
        logger.info(
            "Operator %s status %s -> %s", operator_id, previous.value, status.value
        )
        if status is OperatorStatus.ONLINE and previous is not OperatorStatus.ONLINE:
            self.capacity_freed(operator_id)
        return self.get_operator(operator_id)

    def capacity_freed(self, operator_id: uuid.UUID) -> None:
        """Announce that ``operator_id`` may be able to take a conversation."""

        for listener in list(self._listeners):
            try:
                listener(operator_id)
            except Exception:  # the sweeper drains anything left behind
                logger.exception(
                    "Availability listener failed for operator %s", operator_id
                )

    # ------------------------------------------------------------------
    # Load

    def current_load(self, operator_id: uuid.UUID) -> int:
        return self.loads([operator_id]).get(operator_id, 0)

    def loads(self, operator_ids: Iterable[uuid.UUID]) -> dict[uuid.UUID, int]:
        ids = list(operator_ids)
        if not ids:
            return {}
        rows = self._session.execute(
            select(Conversation.assigned_operator_id, func.count(Conversation.id))
            .where(
                Conversation.assigned_operator_id.in_(ids),
                Conversation.status == ConversationStatus.OPEN,
            )
            .group_by(Conversation.assigned_operator_id)
        ).all()
        return {operator_id: count for operator_id, count in rows}

    # ------------------------------------------------------------------
    # Candidate selection

    def eligible_operators(self, context: EligibilityContext) -> list[OperatorCandidate]:
        """Return candidates ordered by ascending load, then longest idle.

        Eligible means online, active, below capacity, inside working hours
        (unless disabled) and, when ``context.queue_id`` is set, a member of
        that queue.
        """

        stmt = select(Operator).where(
            Operator.is_active.is_(True),
            Operator.status == OperatorStatus.ONLINE,
        )
        if context.operator_id is not None:
            stmt = stmt.where(Operator.id == context.operator_id)
        if context.queue_id is not None:
            stmt = stmt.join(
                QueueMembership, QueueMembership.operator_id == Operator.id
            ).where(QueueMembership.queue_id == context.queue_id)
        operators = (
            self._session.execute(stmt.execution_options(populate_existing=True))
            .scalars()
            .all()
        )
        if context.check_working_hours:
            local = context.at.astimezone(self._tz).time()
            operators = [
                op
                for op in operators
                if within_working_hours(op.work_start, op.work_end, local)
            ]
        loads = self.loads(op.id for op in operators)
        candidates = [
            OperatorCandidate(
                operator_id=op.id,
                name=op.name,
                load=loads.get(op.id, 0),
                capacity=op.capacity,
                version=op.version,
                last_assigned_at=op.last_assigned_at,
            )
            for op in operators
            if loads.get(op.id, 0) < op.capacity
        ]
        candidates.sort(key=lambda c: (c.load, c.last_assigned_at or _NEVER, str(c.operator_id)))
        return candidates

    def candidate(
        self,
        operator_id: uuid.UUID,
        *,
        at: datetime | None = None,
        check_working_hours: bool = True,
    ) -> OperatorCandidate | None:
        """Return ``operator_id`` as a candidate if it can take work right now."""

        matches = self.eligible_operators(
            EligibilityContext(
                at=at or self._clock(),
                operator_id=operator_id,
                check_working_hours=check_working_hours,
            )
        )
        return matches[0] if matches else None

    # ------------------------------------------------------------------
    # Wallets and views

    def wallet_owner(self, contact_ref: str) -> uuid.UUID | None:
        """Return the operator owning ``contact_ref``'s wallet, if any."""

        return self._session.execute(
            select(ContactWallet.operator_id)
            .join(Operator, Operator.id == ContactWallet.operator_id)
            .where(
                ContactWallet.contact_ref == contact_ref,
                ContactWallet.is_active.is_(True),
                Operator.is_active.is_(True),
            )
            .order_by(ContactWallet.created_at.desc(), ContactWallet.id.desc())
            .limit(1)
        ).scalar_one_or_none()

    def describe(self, operator_id: uuid.UUID) -> OperatorView:
        return self._views([self.get_operator(operator_id)])[0]

    def list_operators(self) -> list[OperatorView]:
        operators = (
            self._session.execute(
                select(Operator)
                .where(Operator.is_active.is_(True))
                .order_by(Operator.name)
                .execution_options(populate_existing=True)
            )
            .scalars()
            .all()
        )
        return self._views(operators)

    def _views(self, operators: Iterable[Operator]) -> list[OperatorView]:
        operators = list(operators)
        loads = self.loads(op.id for op in operators)
        memberships: dict[uuid.UUID, list[uuid.UUID]] = {}
        for operator_id, queue_id in self._session.execute(
            select(QueueMembership.operator_id, QueueMembership.queue_id).where(
                QueueMembership.operator_id.in_([op.id for op in operators])
            )
        ).all():
            memberships.setdefault(operator_id, []).append(queue_id)
        return [
            OperatorView(
                id=op.id,
                name=op.name,
                status=op.status,
                capacity=op.capacity,
                load=loads.get(op.id, 0),
                work_start=op.work_start,
                work_end=op.work_end,
                last_assigned_at=op.last_assigned_at,
                queue_ids=memberships.get(op.id, []),
            )
            for op in operators
        ]


__all__ = ["AvailabilityListener", "OperatorRegistry", "within_working_hours"]
