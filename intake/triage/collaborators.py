"""External collaborators consumed by the triage pipeline."""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from typing import Any, Protocol, TypeVar

from ..core.errors import LookupTimeout

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class ClassificationContext:
    """What the classifier gets to see about a conversation."""

    conversation_id: int
    contact_ref: str
    messages: list[str]
    channel: str = "whatsapp"
    candidate_intents: list[str] = field(default_factory=list)

    @property
    def text(self) -> str:
        return "\n".join(self.messages)


@dataclass(frozen=True)
class Classification:
    intent: str | None
    confidence: float
    entities: dict[str, Any] = field(default_factory=dict)
    sentiment: str | None = None


@dataclass(frozen=True)
class CustomerMatch:
    """A customer record linked to a contact or identifier."""

    customer_ref: str
    owner_operator_id: uuid.UUID | None = None
    name: str | None = None


class Classifier(Protocol):
    def classify(self, context: ClassificationContext) -> Classification: ...


class CustomerLookup(Protocol):
    def lookup_by_contact(self, contact_ref: str) -> CustomerMatch | None: ...

    def lookup_by_identifier(self, code: str) -> CustomerMatch | None: ...


class IdentifierRequester(Protocol):
    def request_identifier(self, conversation_id: int, contact_ref: str) -> None: ...


class NullCustomerLookup:
    """Lookup used when no CRM is wired in: nobody is ever linked."""

    def lookup_by_contact(self, contact_ref: str) -> CustomerMatch | None:
        return None

    def lookup_by_identifier(self, code: str) -> CustomerMatch | None:
        return None


class LoggingIdentifierRequester:
    def request_identifier(self, conversation_id: int, contact_ref: str) -> None:
        logger.info(
            "Requesting CNPJ from contact %s on conversation %s",
            contact_ref,
            conversation_id,
        )


def bounded_call(func: Callable[..., T], *args: Any, timeout: float, **kwargs: Any) -> T:
    """Run ``func`` with a hard deadline, raising :class:`LookupTimeout`.

    The worker thread cannot be killed; it is abandoned and its result is
    discarded if it ever completes.
    """

    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="intake-call")
    future = executor.submit(func, *args, **kwargs)
    try:
        return future.result(timeout=timeout)
    except FutureTimeout as exc:
        future.cancel()
        raise LookupTimeout(
            f"{getattr(func, '__qualname__', func)} exceeded {timeout}s"
        ) from exc
    finally:
        executor.shutdown(wait=False)


__all__ = [
    "Classification",
    "ClassificationContext",
    "Classifier",
    "CustomerLookup",
    "CustomerMatch",
    "IdentifierRequester",
    "LoggingIdentifierRequester",
    "NullCustomerLookup",
    "bounded_call",
]
