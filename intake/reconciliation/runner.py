"""Interval runner for the reconciliation sweeper."""

from __future__ import annotations

import logging
from collections.abc import Callable
from threading import Event, Thread

from sqlalchemy.orm import Session, sessionmaker

from .sweeper import ReconciliationSweeper, SweepReport

logger = logging.getLogger(__name__)

SweeperFactory = Callable[[Session], ReconciliationSweeper]


class SweepRunner:
    """Run a sweep every ``interval`` seconds on a background thread.

    Each tick opens a fresh session; nothing is carried between ticks, so
    the runner can be restarted at any time. :meth:`stop` sets the
    cancellation event and waits for the current tick to finish.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        build_sweeper: SweeperFactory,
        *,
        interval: float = 30.0,
    ) -> None:
        self._session_factory = session_factory
        self._build_sweeper = build_sweeper
        self.interval = interval
        self._stop = Event()
        self._thread: Thread | None = None

    def run_once(self) -> SweepReport:
        session = self._session_factory()
        try:
            return self._build_sweeper(session).sweep()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                self.run_once()
            except Exception:  # keep ticking; the next cycle retries
                logger.exception("Sweep cycle failed")
            self._stop.wait(self.interval)

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = Thread(target=self._loop, name="intake-sweeper", daemon=True)
        self._thread.start()
        logger.info("Sweeper started (interval %ss)", self.interval)

    def stop(self, timeout: float | None = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Sweeper stopped")

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()


__all__ = ["SweepRunner", "SweeperFactory"]
