"""Command line entry point for the reconciliation sweeper.

``python sweep.py --once`` runs a single pass and prints the report;
without ``--once`` the sweeper ticks every ``--interval`` seconds until
interrupted.
"""

from __future__ import annotations

import argparse
import json
import logging
import signal
from threading import Event

from dotenv import load_dotenv

from intake.app_logging import init_logging
from intake.config import IntakeSettings
from intake.models.session import get_sessionmaker, init_schema
from intake.reconciliation import SweepRunner
from intake.services import Collaborators, build_services

logger = logging.getLogger("intake.sweep")


def build_runner(settings: IntakeSettings, *, interval: float | None = None) -> SweepRunner:
    factory = get_sessionmaker(settings.database_url)
    if settings.auto_create_schema:
        init_schema(factory.kw["bind"])
    collaborators = Collaborators.from_settings(settings)
    return SweepRunner(
        factory,
        lambda session: build_services(session, settings, collaborators).sweeper,
        interval=interval if interval is not None else settings.sweep_interval_seconds,
    )


def main(argv: list[str] | None = None) -> None:
    """Parse CLI arguments and run the sweeper."""

    parser = argparse.ArgumentParser(description="Reconcile stuck conversations")
    parser.add_argument(
        "--once", action="store_true", help="Run a single sweep and exit"
    )
    parser.add_argument(
        "--interval",
        type=float,
        default=None,
        help="Seconds between sweeps (default: SWEEP_INTERVAL_SECONDS)",
    )
    args = parser.parse_args(argv)

    load_dotenv()
    init_logging()
    settings = IntakeSettings.from_env()
    runner = build_runner(settings, interval=args.interval)

    if args.once:
        report = runner.run_once()
        print(json.dumps(report.as_dict()))
        return

    stop = Event()
    signal.signal(signal.SIGTERM, lambda *_: stop.set())
    runner.start()
    try:
        while not stop.wait(1.0):
            pass
    except KeyboardInterrupt:
        logger.info("Interrupted")
    finally:
        runner.stop(timeout=runner.interval)


if __name__ == "__main__":
    main()
