"""Injectable time source."""

from __future__ import annotations

import datetime as dt
from collections.abc import Callable

from ..models.types import utcnow

Clock = Callable[[], dt.datetime]

system_clock: Clock = utcnow

__all__ = ["Clock", "system_clock"]
