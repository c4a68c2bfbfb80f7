import pathlib
import sys
import uuid
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta, timezone

import pytest
from sqlalchemy.orm import Session, sessionmaker

sys.path.append(str(pathlib.Path(__file__).resolve().parents[1]))
from intake.config import IntakeSettings
from intake.core.errors import TransientClassificationError
from intake.models import (
    ConditionType,
    ContactWallet,
    Conversation,
    ConversationMessage,
    DestinationType,
    MessageDirection,
    Operator,
    OperatorStatus,
    QueueMembership,
    RoutingRule,
    ServiceQueue,
)
from intake.models.session import get_engine, get_sessionmaker, init_schema
from intake.notifications import ASSIGNED_EVENT
from intake.services import Collaborators, build_services
from intake.triage.collaborators import Classification, CustomerMatch

# Monday, inside the default 08:00-18:00 working window.
T0 = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)

VALID_CNPJ = "11222333000181"


class FrozenClock:
    def __init__(self, now: datetime = T0) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class StaticClassifier:
    """Returns a fixed classification, or raises the queued errors first."""

    def __init__(self, result: Classification | None = None) -> None:
        self.result = result or Classification(intent=None, confidence=0.0)
        self.errors: list[Exception] = []
        self.calls: list[list[str]] = []

    def classify(self, context):
        self.calls.append(list(context.messages))
        if self.errors:
            raise self.errors.pop(0)
        return self.result

    def fail_times(self, count: int, exc_type: type[Exception] = TransientClassificationError):
        self.errors.extend(exc_type("classifier unavailable") for _ in range(count))


@dataclass
class FakeLookup:
    by_contact: dict[str, CustomerMatch] = field(default_factory=dict)
    by_identifier: dict[str, CustomerMatch] = field(default_factory=dict)
    identifier_calls: list[str] = field(default_factory=list)

    def lookup_by_contact(self, contact_ref: str) -> CustomerMatch | None:
        return self.by_contact.get(contact_ref)

    def lookup_by_identifier(self, code: str) -> CustomerMatch | None:
        self.identifier_calls.append(code)
        return self.by_identifier.get(code)


@dataclass
class RecordingRequester:
    requests: list[tuple[int, str]] = field(default_factory=list)

    def request_identifier(self, conversation_id: int, contact_ref: str) -> None:
        self.requests.append((conversation_id, contact_ref))


@dataclass
class RecordingNotifier:
    sent: list[tuple[uuid.UUID, int]] = field(default_factory=list)
    alerts: list[tuple[uuid.UUID, int, str]] = field(default_factory=list)
    fail: bool = False

    def notify(
        self, operator_id: uuid.UUID, conversation_id: int, event: str = ASSIGNED_EVENT
    ) -> None:
        if self.fail:
            raise RuntimeError("push gateway down")
        if event == ASSIGNED_EVENT:
            self.sent.append((operator_id, conversation_id))
        else:
            self.alerts.append((operator_id, conversation_id, event))


class Factory:
    """Creates committed rows for tests."""

    def __init__(self, session: Session, clock: FrozenClock) -> None:
        self.session = session
        self.clock = clock

    def queue(self, name: str = "Support", *, unit_ref: str | None = None) -> ServiceQueue:
        queue = ServiceQueue(name=name, unit_ref=unit_ref)
        self.session.add(queue)
        self.session.commit()
        return queue

    def operator(
        self,
        name: str = "Ana",
        *,
        status: OperatorStatus = OperatorStatus.ONLINE,
        capacity: int = 2,
        queues: tuple[ServiceQueue, ...] = (),
        work_start: time | None = None,
        work_end: time | None = None,
        last_assigned_at: datetime | None = None,
        status_changed_at: datetime | None = None,
    ) -> Operator:
        operator = Operator(
            name=name,
            status=status,
            capacity=capacity,
            work_start=work_start,
            work_end=work_end,
            last_assigned_at=last_assigned_at,
            status_changed_at=status_changed_at or self.clock(),
        )
        self.session.add(operator)
        self.session.flush()
        for queue in queues:
            self.session.add(QueueMembership(operator_id=operator.id, queue_id=queue.id))
        self.session.commit()
        return operator

    def rule(
        self,
        name: str,
        condition_type: ConditionType,
        condition_value: str,
        destination_type: DestinationType,
        destination_id: object,
        *,
        priority: int = 0,
    ) -> RoutingRule:
        rule = RoutingRule(
            name=name,
            condition_type=condition_type,
            condition_value=condition_value,
            destination_type=destination_type,
            destination_id=str(destination_id),
            priority=priority,
        )
        self.session.add(rule)
        self.session.commit()
        return rule

    def wallet(self, contact_ref: str, operator: Operator) -> ContactWallet:
        wallet = ContactWallet(contact_ref=contact_ref, operator_id=operator.id)
        self.session.add(wallet)
        self.session.commit()
        return wallet

    def conversation(
        self,
        contact_ref: str = "5511999990000",
        *,
        text: str | None = None,
        channel_account_ref: str = "phone-1",
        **values: object,
    ) -> Conversation:
        now = self.clock()
        values.setdefault("created_at", now)
        values.setdefault("updated_at", now)
        conversation = Conversation(
            contact_ref=contact_ref,
            channel="whatsapp",
            channel_account_ref=channel_account_ref,
            **values,
        )
        self.session.add(conversation)
        self.session.flush()
        if text is not None:
            self.message(conversation, text)
        self.session.commit()
        return conversation

    def message(
        self,
        conversation: Conversation,
        text: str,
        *,
        direction: MessageDirection = MessageDirection.INBOUND,
        sent_at: datetime | None = None,
    ) -> ConversationMessage:
        message = ConversationMessage(
            conversation_id=conversation.id,
            direction=direction,
            body=text,
            payload={},
            sent_at=sent_at or self.clock(),
        )
        self.session.add(message)
        self.session.commit()
        return message


@pytest.fixture
def engine(tmp_path):
    engine = get_engine(f"sqlite+pysqlite:///{tmp_path / 'intake.db'}")
    init_schema(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine) -> sessionmaker[Session]:
    return get_sessionmaker(engine=engine)


@pytest.fixture
def session(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def settings() -> IntakeSettings:
    return IntakeSettings(
        database_url="sqlite+pysqlite://",
        lookup_timeout_seconds=2.0,
        classifier_timeout_seconds=2.0,
        auto_create_schema=False,
    )


@pytest.fixture
def classifier() -> StaticClassifier:
    return StaticClassifier()


@pytest.fixture
def lookup() -> FakeLookup:
    return FakeLookup()


@pytest.fixture
def requester() -> RecordingRequester:
    return RecordingRequester()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def collaborators(classifier, lookup, requester, notifier) -> Collaborators:
    return Collaborators(
        classifier=classifier, lookup=lookup, requester=requester, notifier=notifier
    )


@pytest.fixture
def make_services(session, settings, collaborators, clock):
    def _make(target_session: Session | None = None, **overrides: object):
        return build_services(
            target_session or session,
            settings.with_overrides(**overrides) if overrides else settings,
            collaborators,
            clock=clock,
        )

    return _make


@pytest.fixture
def services(make_services):
    return make_services()


@pytest.fixture
def factory(session, clock) -> Factory:
    return Factory(session, clock)
