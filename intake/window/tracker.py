"""Provider messaging window bookkeeping.

The window is embedded in the ``conversations`` row. Inbound messages may
only push ``window_closes_at`` forward; outbound messages never touch it.
"Is open" is always derived by comparing against the clock, so a window
lapses without any write.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy import case, literal, or_, select, update
from sqlalchemy.orm import Session

from ..config import IntakeSettings
from ..core.clock import Clock, system_clock
from ..core.errors import ConversationNotFoundError
from ..models import Conversation, as_utc
from ..models.types import UTCDateTime
from .schemas import WindowView

logger = logging.getLogger(__name__)


class WindowTracker:
    def __init__(
        self,
        session: Session,
        settings: IntakeSettings,
        *,
        clock: Clock = system_clock,
    ) -> None:
        self._session = session
        self._window = settings.window
        self._clock = clock

    def record_inbound(self, conversation_id: int, at: datetime | None = None) -> None:
        """Open or extend the window for an inbound message received at ``at``.

        The conditional update runs in the store, so concurrent or
        out-of-order deliveries can never move ``window_closes_at`` back.
        ``window_opened_at`` is (re)set only when there is no live window.
        """

        at = as_utc(at or self._clock())
        candidate = at + self._window
        opened = Conversation.window_opened_at
        closes = Conversation.window_closes_at
        last_inbound = Conversation.last_inbound_at
        result = self._session.execute(
            update(Conversation)
            .where(Conversation.id == conversation_id)
            .values(
                window_opened_at=case(
                    (
                        or_(opened.is_(None), closes.is_(None), closes <= at),
                        literal(at, UTCDateTime()),
                    ),
                    else_=opened,
                ),
                window_closes_at=case(
                    (
                        or_(closes.is_(None), closes < candidate),
                        literal(candidate, UTCDateTime()),
                    ),
                    else_=closes,
                ),
                last_inbound_at=case(
                    (
                        or_(last_inbound.is_(None), last_inbound < at),
                        literal(at, UTCDateTime()),
                    ),
                    else_=last_inbound,
                ),
            )
        )
        if result.rowcount != 1:
            raise ConversationNotFoundError(f"Conversation {conversation_id} not found")

    def record_outbound(self, conversation_id: int, at: datetime | None = None) -> None:
        """Note an outbound message; the window deadline is left untouched."""

        at = as_utc(at or self._clock())
        last_outbound = Conversation.last_outbound_at
        result = self._session.execute(
            update(Conversation)
            .where(Conversation.id == conversation_id)
            .values(
                last_outbound_at=case(
                    (
                        or_(last_outbound.is_(None), last_outbound < at),
                        literal(at, UTCDateTime()),
                    ),
                    else_=last_outbound,
                )
            )
        )
        if result.rowcount != 1:
            raise ConversationNotFoundError(f"Conversation {conversation_id} not found")

    def expire(self, conversation_id: int, at: datetime | None = None) -> WindowView:
        """Close the window early because the provider reported it closed.

        This is the only operation that may shorten ``window_closes_at``.
        """

        at = as_utc(at or self._clock())
        self._session.execute(
            update(Conversation)
            .where(
                Conversation.id == conversation_id,
                Conversation.window_closes_at.is_not(None),
                Conversation.window_closes_at > at,
            )
            .values(window_closes_at=at)
        )
        logger.info("Window for conversation %s expired at %s", conversation_id, at)
        return self.status(conversation_id, at=at)

    def _bounds(self, conversation_id: int) -> tuple[datetime | None, datetime | None]:
        row = self._session.execute(
            select(Conversation.window_opened_at, Conversation.window_closes_at).where(
                Conversation.id == conversation_id
            )
        ).one_or_none()
        if row is None:
            raise ConversationNotFoundError(f"Conversation {conversation_id} not found")
        return row[0], row[1]

    def is_open(self, conversation_id: int, at: datetime | None = None) -> bool:
        _, closes_at = self._bounds(conversation_id)
        return closes_at is not None and closes_at > as_utc(at or self._clock())

    def remaining(self, conversation_id: int, at: datetime | None = None) -> timedelta:
        _, closes_at = self._bounds(conversation_id)
        if closes_at is None:
            return timedelta(0)
        return max(closes_at - as_utc(at or self._clock()), timedelta(0))

    def status(self, conversation_id: int, at: datetime | None = None) -> WindowView:
        now = as_utc(at or self._clock())
        opened_at, closes_at = self._bounds(conversation_id)
        remaining = (
            max(closes_at - now, timedelta(0)) if closes_at is not None else timedelta(0)
        )
        return WindowView(
            conversation_id=conversation_id,
            opened_at=opened_at,
            closes_at=closes_at,
            is_open=closes_at is not None and closes_at > now,
            remaining_seconds=remaining.total_seconds(),
        )


__all__ = ["WindowTracker"]
