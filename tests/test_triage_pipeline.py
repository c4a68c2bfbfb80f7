import uuid
from datetime import timedelta

from sqlalchemy import select, update

from conftest import T0, VALID_CNPJ
from intake.core.errors import PermanentClassificationError
from intake.distribution import URGENT_SCORE
from intake.models import (
    ConditionType,
    Conversation,
    ConversationEvent,
    ConversationStatus,
    DestinationType,
    OperatorStatus,
    TriageState,
    WalletMode,
)
from intake.triage import FAILED_TRIAGE_REASON
from intake.triage.collaborators import Classification, CustomerMatch

CNPJ_TEXT = "Olá, nosso CNPJ é 11.222.333/0001-81"


def _reload(session, conversation_id):
    session.expire_all()
    return session.get(Conversation, conversation_id)


def _events(session, conversation_id):
    return [
        e.event_type
        for e in session.scalars(
            select(ConversationEvent)
            .where(ConversationEvent.conversation_id == conversation_id)
            .order_by(ConversationEvent.id)
        )
    ]


def test_wallet_owner_gets_conversation(session, services, factory):
    owner = factory.operator("Owner")
    factory.operator("Other")
    factory.wallet("5511988887777", owner)
    conversation = factory.conversation("5511988887777", text="oi")

    outcome = services.pipeline.run(conversation.id)

    assert outcome.state is TriageState.ROUTED
    assert outcome.operator_id == owner.id
    row = _reload(session, conversation.id)
    assert row.assigned_operator_id == owner.id
    assert row.status is ConversationStatus.OPEN


def test_unavailable_wallet_owner_falls_through_in_preferential_mode(
    session, services, factory, requester
):
    owner = factory.operator("Owner", status=OperatorStatus.OFFLINE)
    factory.wallet("5511988887777", owner)
    conversation = factory.conversation("5511988887777", text="oi")

    outcome = services.pipeline.run(conversation.id)

    assert outcome.state is TriageState.AWAITING_IDENTIFIER
    assert requester.requests == [(conversation.id, "5511988887777")]


def test_forced_wallet_waits_for_owner(session, make_services, factory):
    services = make_services(wallet_mode=WalletMode.FORCED)
    owner = factory.operator("Owner", status=OperatorStatus.OFFLINE)
    factory.operator("Other")
    factory.wallet("5511988887777", owner)
    conversation = factory.conversation("5511988887777", text="oi")

    outcome = services.pipeline.run(conversation.id)

    assert outcome.state is TriageState.QUEUED
    entry = services.queue.active_entry(conversation.id)
    assert entry.target_operator_id == owner.id

    services.registry.set_status(owner.id, OperatorStatus.ONLINE)

    assert _reload(session, conversation.id).assigned_operator_id == owner.id


def test_linked_customer_goes_to_account_owner(session, services, factory, lookup):
    owner = factory.operator("Owner")
    factory.operator("Other")
    lookup.by_contact["5511977776666"] = CustomerMatch("CUST-1", owner_operator_id=owner.id)
    conversation = factory.conversation("5511977776666", text="bom dia")

    outcome = services.pipeline.run(conversation.id)

    assert outcome.operator_id == owner.id
    assert outcome.detail == "customer owner"
    assert _reload(session, conversation.id).customer_ref == "CUST-1"


def test_identifier_is_requested_once(session, services, factory, requester, clock):
    conversation = factory.conversation(text="bom dia")

    first = services.pipeline.run(conversation.id)
    clock.advance(seconds=30)
    factory.message(conversation, "ainda aqui")
    second = services.pipeline.run(conversation.id)

    assert first.state is TriageState.AWAITING_IDENTIFIER
    assert second.state is TriageState.AWAITING_IDENTIFIER
    assert second.detail == "waiting for identifier"
    assert len(requester.requests) == 1
    assert _reload(session, conversation.id).identifier_requested_at == T0


def test_identifier_reply_links_customer(session, services, factory, lookup, clock):
    owner = factory.operator("Owner")
    factory.operator("Other")
    lookup.by_identifier[VALID_CNPJ] = CustomerMatch("CUST-9", owner_operator_id=owner.id)
    conversation = factory.conversation(text="bom dia")
    services.pipeline.run(conversation.id)

    clock.advance(minutes=1)
    factory.message(conversation, CNPJ_TEXT)
    outcome = services.pipeline.run(conversation.id)

    assert outcome.operator_id == owner.id
    assert lookup.identifier_calls == [VALID_CNPJ]
    assert _reload(session, conversation.id).customer_ref == "CUST-9"


def test_gives_up_on_identifier_after_enough_replies(
    session, services, factory, classifier, clock
):
    conversation = factory.conversation(text="bom dia")
    services.pipeline.run(conversation.id)
    for text in ("oi", "alguém?", "preciso de ajuda"):
        clock.advance(seconds=10)
        factory.message(conversation, text)

    outcome = services.pipeline.run(conversation.id)

    assert classifier.calls
    assert outcome.state is TriageState.QUEUED
    assert outcome.detail == "no routing rule matched"


def test_gives_up_on_identifier_after_timeout(session, services, factory, classifier, clock):
    conversation = factory.conversation(text="bom dia")
    services.pipeline.run(conversation.id)

    clock.advance(seconds=601)
    outcome = services.pipeline.run(conversation.id)

    assert classifier.calls
    assert outcome.state is TriageState.QUEUED


def test_unknown_identifier_is_classified_and_routed_by_rule(
    session, services, factory, classifier
):
    sales = factory.queue("Sales")
    factory.operator("Support only", queues=(factory.queue("Support"),))
    seller = factory.operator("Seller", queues=(sales,))
    factory.rule("sales", ConditionType.INTENT, "sales", DestinationType.QUEUE, sales.id)
    classifier.result = Classification(intent="sales", confidence=0.9, sentiment="neutral")
    conversation = factory.conversation(text=f"{CNPJ_TEXT}, quero comprar")

    outcome = services.pipeline.run(conversation.id)

    assert outcome.state is TriageState.ROUTED
    assert outcome.operator_id == seller.id
    row = _reload(session, conversation.id)
    assert row.intent == "sales"
    assert row.sentiment == "neutral"
    assert row.assigned_queue_id == sales.id
    assert "identifier_unknown" in _events(session, conversation.id)
    assert "classified" in _events(session, conversation.id)


def test_low_confidence_intent_is_ignored(session, services, factory, classifier):
    sales = factory.queue("Sales")
    finance = factory.queue("Finance")
    factory.rule("sales", ConditionType.INTENT, "sales", DestinationType.QUEUE, sales.id, priority=10)
    factory.rule("boleto", ConditionType.KEYWORD, "boleto", DestinationType.QUEUE, finance.id)
    classifier.result = Classification(intent="sales", confidence=0.2)
    conversation = factory.conversation(text=f"{CNPJ_TEXT}, segunda via do boleto")

    outcome = services.pipeline.run(conversation.id)

    assert outcome.state is TriageState.QUEUED
    assert services.queue.active_entry(conversation.id).target_queue_id == finance.id


def test_operator_rule_assigns_directly(session, services, factory, classifier):
    vip = factory.operator("VIP desk")
    factory.operator("Other")
    factory.rule("vip", ConditionType.ORIGIN, "phone-vip", DestinationType.OPERATOR, vip.id)
    conversation = factory.conversation(text=CNPJ_TEXT, channel_account_ref="phone-vip")

    outcome = services.pipeline.run(conversation.id)

    assert outcome.operator_id == vip.id
    assert outcome.detail == "rule vip"


def test_operator_rule_with_busy_operator_uses_default_queue(
    session, make_services, factory, classifier
):
    default = factory.queue("Default")
    services = make_services(default_queue_id=default.id)
    vip = factory.operator("VIP desk", status=OperatorStatus.AWAY)
    factory.rule("vip", ConditionType.ORIGIN, "phone-vip", DestinationType.OPERATOR, vip.id)
    conversation = factory.conversation(text=CNPJ_TEXT, channel_account_ref="phone-vip")

    outcome = services.pipeline.run(conversation.id)

    assert outcome.state is TriageState.QUEUED
    assert services.queue.active_entry(conversation.id).target_queue_id == default.id


def test_unit_rule_prefers_queue_with_available_operator(session, services, factory, classifier):
    first = factory.queue("A-queue", unit_ref="service")
    second = factory.queue("B-queue", unit_ref="service")
    factory.operator("Helper", status=OperatorStatus.AWAY, queues=(first,))
    helper = factory.operator("Second helper", queues=(second,))
    factory.rule("unit", ConditionType.KEYWORD, "cnpj", DestinationType.UNIT, "service")
    conversation = factory.conversation(text=CNPJ_TEXT)

    outcome = services.pipeline.run(conversation.id)

    assert outcome.operator_id == helper.id
    assert _reload(session, conversation.id).assigned_queue_id == second.id


def test_rule_with_unknown_destination_is_skipped(session, services, factory, classifier):
    support = factory.queue("Support")
    factory.rule("ghost", ConditionType.KEYWORD, "cnpj", DestinationType.QUEUE, uuid.uuid4(), priority=9)
    factory.rule("real", ConditionType.KEYWORD, "cnpj", DestinationType.QUEUE, support.id)
    conversation = factory.conversation(text=CNPJ_TEXT)

    services.pipeline.run(conversation.id)

    assert services.queue.active_entry(conversation.id).target_queue_id == support.id


def test_transient_failure_backs_off_and_retries(session, services, factory, classifier, clock):
    classifier.fail_times(1)
    conversation = factory.conversation(text=CNPJ_TEXT)

    failed = services.pipeline.run(conversation.id)

    assert failed.state is TriageState.ERRORED
    row = _reload(session, conversation.id)
    assert row.triage_attempts == 1
    assert row.triage_retry_at == T0 + timedelta(seconds=30)
    assert "TransientClassificationError" in row.triage_error

    early = services.pipeline.run(conversation.id)
    assert early.detail == "waiting for retry"
    assert len(classifier.calls) == 1

    clock.advance(seconds=31)
    retried = services.pipeline.run(conversation.id)
    assert retried.state is TriageState.QUEUED
    assert len(classifier.calls) == 2


def test_failure_handling_yields_to_concurrent_progress(
    session, services, factory, classifier, monkeypatch
):
    classifier.fail_times(1)
    conversation = factory.conversation(text=CNPJ_TEXT)
    pipeline = services.pipeline
    record_failure = pipeline._fail

    def fail_after_another_worker_moved_on(row, exc):
        session.execute(
            update(Conversation)
            .where(Conversation.id == row.id)
            .values(version=Conversation.version + 1, triage_state=TriageState.QUEUED)
            .execution_options(synchronize_session=False)
        )
        session.commit()
        return record_failure(row, exc)

    monkeypatch.setattr(pipeline, "_fail", fail_after_another_worker_moved_on)

    outcome = pipeline.run(conversation.id)

    assert outcome.state is TriageState.QUEUED
    assert outcome.detail == "superseded"
    row = _reload(session, conversation.id)
    assert row.triage_attempts == 0
    assert row.triage_error is None


def test_exhausted_attempts_force_urgent_queue_entry(
    session, make_services, factory, classifier, clock
):
    services = make_services(triage_max_attempts=2)
    classifier.fail_times(5)
    conversation = factory.conversation(text=CNPJ_TEXT)

    services.pipeline.run(conversation.id)
    clock.advance(seconds=31)
    outcome = services.pipeline.run(conversation.id)

    assert outcome.state is TriageState.QUEUED
    entry = services.queue.active_entry(conversation.id)
    assert entry.priority == URGENT_SCORE
    assert entry.priority_reason == FAILED_TRIAGE_REASON
    row = _reload(session, conversation.id)
    assert row.triage_attempts == 2
    assert row.triage_retry_at is None


def test_permanent_classifier_error_uses_fallback_queue(session, services, factory, classifier):
    classifier.fail_times(1, PermanentClassificationError)
    conversation = factory.conversation(text=CNPJ_TEXT)

    outcome = services.pipeline.run(conversation.id)

    assert outcome.state is TriageState.QUEUED
    assert outcome.detail.startswith("classification rejected")
    assert _reload(session, conversation.id).triage_attempts == 0


def test_fallback_assigns_when_anyone_is_free(session, services, factory, classifier):
    operator = factory.operator()
    conversation = factory.conversation(text=CNPJ_TEXT)

    outcome = services.pipeline.run(conversation.id)

    assert outcome.state is TriageState.ROUTED
    assert outcome.operator_id == operator.id


def test_finished_or_assigned_conversations_are_left_alone(services, factory, classifier):
    operator = factory.operator()
    closed = factory.conversation("1", text="oi", status=ConversationStatus.CLOSED)
    taken = factory.conversation(
        "2", text="oi", assigned_operator_id=operator.id, status=ConversationStatus.OPEN
    )

    assert services.pipeline.run(closed.id).state is TriageState.NEW
    assert services.pipeline.run(taken.id).operator_id == operator.id
    assert classifier.calls == []


def test_rerunning_queued_conversation_keeps_single_entry(session, services, factory):
    conversation = factory.conversation(text=CNPJ_TEXT)
    services.pipeline.run(conversation.id)
    entry = services.queue.active_entry(conversation.id)

    outcome = services.pipeline.run(conversation.id)

    assert outcome.state is TriageState.QUEUED
    assert outcome.entry_id == entry.id
    assert len(services.queue.pending()) == 1


def test_transitions_are_audited(session, services, factory):
    conversation = factory.conversation(text=CNPJ_TEXT)

    services.pipeline.run(conversation.id)

    transitions = [
        e.description
        for e in session.scalars(
            select(ConversationEvent)
            .where(
                ConversationEvent.conversation_id == conversation.id,
                ConversationEvent.event_type == "triage_transition",
            )
            .order_by(ConversationEvent.id)
        )
    ]
    assert transitions == [
        "new -> wallet_check",
        "wallet_check -> customer_link_check",
        "customer_link_check -> awaiting_identifier",
        "awaiting_identifier -> ai_classifying",
        "ai_classifying -> queued",
    ]
