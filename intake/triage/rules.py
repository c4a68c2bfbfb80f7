"""Routing rule evaluation."""

from __future__ import annotations

import logging
import re
import unicodedata
from dataclasses import dataclass, field
from datetime import datetime, time
from typing import Any
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..models import ConditionType, RoutingRule
from ..operators.registry import within_working_hours

logger = logging.getLogger(__name__)

WEEKDAYS = ("mon", "tue", "wed", "thu", "fri", "sat", "sun")

_SCHEDULE = re.compile(
    r"^\s*(?:(?P<days>[a-z,\-]+)\s+)?(?P<start>\d{1,2}:\d{2})\s*-\s*(?P<end>\d{1,2}:\d{2})\s*$"
)


def fold(text: str | None) -> str:
    """Lower-case and strip accents so "Cotação" matches "cotacao"."""

    if not text:
        return ""
    decomposed = unicodedata.normalize("NFKD", text)
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch)).lower()


def _values(raw: str) -> list[str]:
    return [fold(part).strip() for part in raw.split(",") if part.strip()]


def _parse_days(days_expr: str) -> set[int]:
    days: set[int] = set()
    for part in days_expr.split(","):
        if "-" in part:
            first, last = (WEEKDAYS.index(p) for p in part.split("-", 1))
            span = range(first, last + 1) if first <= last else [*range(first, 7), *range(0, last + 1)]
            days.update(span)
        else:
            days.add(WEEKDAYS.index(part))
    return days


def schedule_matches(value: str, local: datetime) -> bool:
    """Evaluate a ``"[days] HH:MM-HH:MM"`` schedule against a local datetime."""

    match = _SCHEDULE.match(value.lower())
    if match is None:
        raise ValueError(f"Invalid schedule condition: {value!r}")
    if match.group("days"):
        try:
            days = _parse_days(match.group("days"))
        except ValueError as exc:
            raise ValueError(f"Invalid weekday in schedule: {value!r}") from exc
        if local.weekday() not in days:
            return False
    start = time.fromisoformat(match.group("start").zfill(5))
    end = time.fromisoformat(match.group("end").zfill(5))
    return within_working_hours(start, end, local.time())


@dataclass(frozen=True)
class RuleContext:
    at: datetime
    text: str = ""
    intent: str | None = None
    sector: str | None = None
    channel: str | None = None
    channel_account_ref: str | None = None
    entities: dict[str, Any] = field(default_factory=dict)


class RuleEngine:
    """Evaluates active rules by descending priority; first match wins."""

    def __init__(self, session: Session, *, timezone: str = "UTC") -> None:
        self._session = session
        self._tz = ZoneInfo(timezone)

    def active_rules(self) -> list[RoutingRule]:
        return list(
            self._session.execute(
                select(RoutingRule)
                .where(RoutingRule.is_active.is_(True))
                .order_by(
                    RoutingRule.priority.desc(),
                    RoutingRule.created_at.asc(),
                    RoutingRule.name.asc(),
                )
            ).scalars()
        )

    def known_intents(self) -> list[str]:
        intents: list[str] = []
        for rule in self.active_rules():
            if rule.condition_type is ConditionType.INTENT:
                intents.extend(
                    part.strip() for part in rule.condition_value.split(",") if part.strip()
                )
        return sorted(set(intents))

    def matches(self, rule: RoutingRule, context: RuleContext) -> bool:
        kind = rule.condition_type
        if kind is ConditionType.KEYWORD:
            text = fold(context.text)
            return any(word in text for word in _values(rule.condition_value))
        if kind is ConditionType.INTENT:
            return fold(context.intent) in _values(rule.condition_value)
        if kind is ConditionType.SECTOR:
            sector = context.sector or context.entities.get("sector")
            return bool(sector) and fold(str(sector)) in _values(rule.condition_value)
        if kind is ConditionType.ORIGIN:
            accepted = _values(rule.condition_value)
            return fold(context.channel_account_ref) in accepted or fold(context.channel) in accepted
        if kind is ConditionType.SCHEDULE:
            return schedule_matches(rule.condition_value, context.at.astimezone(self._tz))
        return False

    def evaluate(self, context: RuleContext) -> list[RoutingRule]:
        """Return matching rules in evaluation order (best first)."""

        matched: list[RoutingRule] = []
        for rule in self.active_rules():
            try:
                if self.matches(rule, context):
                    matched.append(rule)
            except ValueError as exc:
                logger.warning("Skipping routing rule %s: %s", rule.name, exc)
        return matched


__all__ = ["RuleContext", "RuleEngine", "fold", "schedule_matches"]
