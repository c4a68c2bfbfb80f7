"""Utility script to bootstrap the database with demo queues, operators and rules."""

from __future__ import annotations

import json
import logging
import os
import time
from dataclasses import dataclass
from datetime import time as dt_time
from pathlib import Path
from typing import Any

from dotenv import load_dotenv
from sqlalchemy import select, text
from sqlalchemy.engine import make_url
from sqlalchemy.orm import Session, sessionmaker

from intake.config import DEFAULT_DATABASE_URL
from intake.models import (
    ConditionType,
    ContactWallet,
    DestinationType,
    Operator,
    OperatorStatus,
    QueueMembership,
    RoutingRule,
    ServiceQueue,
)
from intake.models.session import get_sessionmaker, init_schema

logger = logging.getLogger("seed")

DEMO_DATA: dict[str, Any] = {
    "queues": [
        {"name": "Sales", "unit_ref": "commercial"},
        {"name": "Support", "unit_ref": "service"},
        {"name": "Finance", "unit_ref": "service"},
    ],
    "operators": [
        {
            "name": "Ana",
            "capacity": 5,
            "work_start": "08:00",
            "work_end": "18:00",
            "queues": ["Sales"],
        },
        {"name": "Bruno", "capacity": 4, "queues": ["Support", "Finance"]},
        {"name": "Carla", "capacity": 3, "queues": ["Support"]},
    ],
    "rules": [
        {
            "name": "Billing keywords",
            "condition_type": "keyword",
            "condition_value": "boleto, fatura, invoice",
            "destination": "Finance",
            "destination_type": "queue",
            "priority": 30,
        },
        {
            "name": "Sales intent",
            "condition_type": "intent",
            "condition_value": "sales",
            "destination": "Sales",
            "destination_type": "queue",
            "priority": 20,
        },
        {
            "name": "Support intent",
            "condition_type": "intent",
            "condition_value": "support",
            "destination": "service",
            "destination_type": "unit",
            "priority": 10,
        },
    ],
    "wallets": [],
}


@dataclass(slots=True)
class SeedConfig:
    """Configuration derived from the environment for the seed process."""

    db_url: str
    data: dict[str, Any]
    operators_online: bool


def _to_bool(value: str | None) -> bool:
    """Parse a truthy string value into ``bool``."""

    if value is None:
        return False
    return value.strip().lower() in {"1", "true", "yes", "y", "on"}


def _safe_url(db_url: str) -> str:
    """Return a version of ``db_url`` with any password redacted."""

    parsed = make_url(db_url)
    if parsed.password is None:
        return db_url
    return parsed.set(password="***").render_as_string(hide_password=False)


def _load_config() -> SeedConfig:
    """Load seed configuration from environment variables."""

    data = DEMO_DATA
    seed_file = os.getenv("SEED_FILE")
    if seed_file:
        path = Path(seed_file).expanduser()
        if path.exists():
            data = json.loads(path.read_text(encoding="utf-8"))
        else:
            logger.warning("Seed file %s not found; using demo data.", path)
    return SeedConfig(
        db_url=os.getenv("DATABASE_URL", DEFAULT_DATABASE_URL),
        data=data,
        operators_online=_to_bool(os.getenv("SEED_OPERATORS_ONLINE")),
    )


def wait_for_database(
    factory: sessionmaker[Session], max_attempts: int = 10, delay: float = 3.0
) -> None:
    """Attempt to establish a database connection, retrying if necessary."""

    for attempt in range(1, max_attempts + 1):
        try:
            with factory() as session:
                session.execute(text("SELECT 1"))
        except Exception as exc:  # pragma: no cover - depends on external DB
            logger.info(
                "Database not ready (attempt %d/%d): %s; retrying in %.1fs",
                attempt,
                max_attempts,
                exc,
                delay,
            )
            if attempt >= max_attempts:
                raise RuntimeError("Database did not become ready in time") from exc
            time.sleep(delay)
            continue
        logger.info("Database connection established after %d attempt(s)", attempt)
        return


def _parse_time(value: str | None) -> dt_time | None:
    return dt_time.fromisoformat(value) if value else None


def seed(session: Session, data: dict[str, Any], *, online: bool = False) -> dict[str, int]:
    """Create missing queues, operators, memberships, rules and wallets.

    Rows are matched by name, so running the seed twice is harmless.
    """

    created = {"queues": 0, "operators": 0, "rules": 0, "wallets": 0}

    queues: dict[str, ServiceQueue] = {}
    for item in data.get("queues", []):
        queue = session.execute(
            select(ServiceQueue).where(ServiceQueue.name == item["name"])
        ).scalar_one_or_none()
        if queue is None:
            queue = ServiceQueue(
                name=item["name"],
                description=item.get("description"),
                unit_ref=item.get("unit_ref"),
            )
            session.add(queue)
            session.flush()
            created["queues"] += 1
            logger.info("Created queue %s (%s)", queue.name, queue.id)
        queues[queue.name] = queue

    operators: dict[str, Operator] = {}
    for item in data.get("operators", []):
        operator = session.execute(
            select(Operator).where(Operator.name == item["name"])
        ).scalar_one_or_none()
        if operator is None:
            operator = Operator(
                name=item["name"],
                capacity=int(item.get("capacity", 5)),
                work_start=_parse_time(item.get("work_start")),
                work_end=_parse_time(item.get("work_end")),
                status=OperatorStatus.ONLINE if online else OperatorStatus.OFFLINE,
            )
            session.add(operator)
            session.flush()
            created["operators"] += 1
            logger.info("Created operator %s (%s)", operator.name, operator.id)
        operators[operator.name] = operator
        for queue_name in item.get("queues", []):
            queue = queues.get(queue_name)
            if queue is None:
                logger.warning("Operator %s references unknown queue %s", operator.name, queue_name)
                continue
            exists = session.execute(
                select(QueueMembership.id).where(
                    QueueMembership.operator_id == operator.id,
                    QueueMembership.queue_id == queue.id,
                )
            ).first()
            if exists is None:
                session.add(QueueMembership(operator_id=operator.id, queue_id=queue.id))

    for item in data.get("rules", []):
        exists = session.execute(
            select(RoutingRule.id).where(RoutingRule.name == item["name"])
        ).first()
        if exists is not None:
            continue
        destination_type = DestinationType(item["destination_type"])
        destination = item["destination"]
        if destination_type is DestinationType.QUEUE:
            destination = str(queues[destination].id)
        elif destination_type is DestinationType.OPERATOR:
            destination = str(operators[destination].id)
        session.add(
            RoutingRule(
                name=item["name"],
                condition_type=ConditionType(item["condition_type"]),
                condition_value=item["condition_value"],
                destination_type=destination_type,
                destination_id=destination,
                priority=int(item.get("priority", 0)),
            )
        )
        created["rules"] += 1

    for item in data.get("wallets", []):
        operator = operators.get(item["operator"])
        if operator is None:
            logger.warning("Wallet for %s references unknown operator", item["contact_ref"])
            continue
        exists = session.execute(
            select(ContactWallet.id).where(
                ContactWallet.contact_ref == item["contact_ref"],
                ContactWallet.operator_id == operator.id,
            )
        ).first()
        if exists is None:
            session.add(
                ContactWallet(
                    contact_ref=item["contact_ref"],
                    operator_id=operator.id,
                    reason=item.get("reason"),
                )
            )
            created["wallets"] += 1

    session.commit()
    return created


def main() -> None:
    """Entrypoint for the seeding workflow."""

    load_dotenv()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")

    config = _load_config()
    logger.info("Starting seed process using %s", _safe_url(config.db_url))

    factory = get_sessionmaker(config.db_url)
    wait_for_database(factory)
    init_schema(factory.kw["bind"])
    with factory() as session:
        created = seed(session, config.data, online=config.operators_online)

    logger.info("Seed process completed: %s", created)


if __name__ == "__main__":
    main()
