"""Runtime configuration for the intake service.

Settings are resolved once (``IntakeSettings.from_env``) and passed
explicitly to every service; nothing reads the environment lazily at call
time, so tests and callers can build a differently configured instance per
call.

Environment variables (see :meth:`IntakeSettings.from_env` for defaults):
DATABASE_URL, WINDOW_HOURS, DEFAULT_QUEUE_ID, WALLET_MODE, OPERATOR_TIMEZONE,
TRIAGE_MAX_ATTEMPTS, TRIAGE_BACKOFF_BASE_SECONDS, TRIAGE_BACKOFF_MAX_SECONDS,
TRIAGE_STALE_SECONDS, IDENTIFIER_SCAN_LIMIT, IDENTIFIER_MAX_WAIT_MESSAGES,
IDENTIFIER_WAIT_SECONDS, LOOKUP_TIMEOUT_SECONDS, CLASSIFIER_URL,
CLASSIFIER_API_KEY, CLASSIFIER_MODEL, CLASSIFIER_TIMEOUT_SECONDS,
CLASSIFIER_MIN_CONFIDENCE, MATCH_MAX_RETRIES, SLA_WAIT_SECONDS,
SLA_RESPONSE_SECONDS, SLA_RESOLUTION_SECONDS, QUEUE_STALE_SECONDS,
OFFLINE_GRACE_SECONDS, SWEEP_INTERVAL_SECONDS, SWEEP_BATCH_SIZE,
METRICS_RECENT_HOURS, NOTIFY_WEBHOOK_URL, WHATSAPP_APP_SECRET,
WHATSAPP_VERIFY_TOKEN, AUTO_CREATE_SCHEMA.
"""

from __future__ import annotations

import os
import uuid
from dataclasses import dataclass, replace
from datetime import timedelta

from dotenv import load_dotenv

from .models.enums import WalletMode

DEFAULT_DATABASE_URL = "sqlite+pysqlite:///intake.db"


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _env_float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


def _env_bool(name: str, default: bool) -> bool:
    return os.getenv(name, "true" if default else "false").lower() == "true"


@dataclass(frozen=True)
class IntakeSettings:
    """Tunables for triage, distribution, sweeping and metrics."""

    database_url: str = DEFAULT_DATABASE_URL
    window_hours: int = 24
    default_queue_id: uuid.UUID | None = None
    wallet_mode: WalletMode = WalletMode.PREFERENTIAL
    operator_timezone: str = "UTC"
    triage_max_attempts: int = 5
    triage_backoff_base_seconds: int = 30
    triage_backoff_max_seconds: int = 1800
    triage_stale_seconds: int = 120
    identifier_scan_limit: int = 10
    identifier_max_wait_messages: int = 3
    identifier_wait_seconds: int = 600
    lookup_timeout_seconds: float = 5.0
    classifier_url: str | None = None
    classifier_api_key: str | None = None
    classifier_model: str = "deepseek-chat"
    classifier_timeout_seconds: float = 10.0
    classifier_min_confidence: float = 0.5
    match_max_retries: int = 3
    sla_wait_seconds: int = 300
    sla_response_seconds: int = 300
    sla_resolution_seconds: int = 86400
    queue_stale_seconds: int = 600
    offline_grace_seconds: int = 600
    sweep_interval_seconds: int = 30
    sweep_batch_size: int = 100
    metrics_recent_hours: int = 24
    notify_webhook_url: str | None = None
    whatsapp_app_secret: str | None = None
    whatsapp_verify_token: str | None = None
    auto_create_schema: bool = True

    @property
    def window(self) -> timedelta:
        return timedelta(hours=self.window_hours)

    def backoff(self, attempts: int) -> timedelta:
        """Delay before the next triage attempt after ``attempts`` failures."""

        exponent = max(attempts - 1, 0)
        seconds = min(
            self.triage_backoff_base_seconds * (2**exponent),
            self.triage_backoff_max_seconds,
        )
        return timedelta(seconds=seconds)

    def with_overrides(self, **changes: object) -> "IntakeSettings":
        return replace(self, **changes)

    @classmethod
    def from_env(cls) -> "IntakeSettings":
        """Build settings from the process environment (and ``.env``)."""

        load_dotenv()
        default_queue = os.getenv("DEFAULT_QUEUE_ID")
        return cls(
            database_url=os.getenv("DATABASE_URL", DEFAULT_DATABASE_URL),
            window_hours=_env_int("WINDOW_HOURS", 24),
            default_queue_id=uuid.UUID(default_queue) if default_queue else None,
            wallet_mode=WalletMode(os.getenv("WALLET_MODE", "preferential").lower()),
            operator_timezone=os.getenv("OPERATOR_TIMEZONE", "UTC"),
            triage_max_attempts=_env_int("TRIAGE_MAX_ATTEMPTS", 5),
            triage_backoff_base_seconds=_env_int("TRIAGE_BACKOFF_BASE_SECONDS", 30),
            triage_backoff_max_seconds=_env_int("TRIAGE_BACKOFF_MAX_SECONDS", 1800),
            triage_stale_seconds=_env_int("TRIAGE_STALE_SECONDS", 120),
            identifier_scan_limit=_env_int("IDENTIFIER_SCAN_LIMIT", 10),
            identifier_max_wait_messages=_env_int("IDENTIFIER_MAX_WAIT_MESSAGES", 3),
            identifier_wait_seconds=_env_int("IDENTIFIER_WAIT_SECONDS", 600),
            lookup_timeout_seconds=_env_float("LOOKUP_TIMEOUT_SECONDS", 5.0),
            classifier_url=os.getenv("CLASSIFIER_URL") or None,
            classifier_api_key=os.getenv("CLASSIFIER_API_KEY") or None,
            classifier_model=os.getenv("CLASSIFIER_MODEL", "deepseek-chat"),
            classifier_timeout_seconds=_env_float("CLASSIFIER_TIMEOUT_SECONDS", 10.0),
            classifier_min_confidence=_env_float("CLASSIFIER_MIN_CONFIDENCE", 0.5),
            match_max_retries=_env_int("MATCH_MAX_RETRIES", 3),
            sla_wait_seconds=_env_int("SLA_WAIT_SECONDS", 300),
            sla_response_seconds=_env_int("SLA_RESPONSE_SECONDS", 300),
            sla_resolution_seconds=_env_int("SLA_RESOLUTION_SECONDS", 86400),
            queue_stale_seconds=_env_int("QUEUE_STALE_SECONDS", 600),
            offline_grace_seconds=_env_int("OFFLINE_GRACE_SECONDS", 600),
            sweep_interval_seconds=_env_int("SWEEP_INTERVAL_SECONDS", 30),
            sweep_batch_size=_env_int("SWEEP_BATCH_SIZE", 100),
            metrics_recent_hours=_env_int("METRICS_RECENT_HOURS", 24),
            notify_webhook_url=os.getenv("NOTIFY_WEBHOOK_URL") or None,
            whatsapp_app_secret=os.getenv("WHATSAPP_APP_SECRET") or None,
            whatsapp_verify_token=os.getenv("WHATSAPP_VERIFY_TOKEN") or None,
            auto_create_schema=_env_bool("AUTO_CREATE_SCHEMA", True),
        )


__all__ = ["DEFAULT_DATABASE_URL", "IntakeSettings"]
