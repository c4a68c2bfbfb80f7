import threading
from datetime import timedelta

import pytest
from sqlalchemy import select

from conftest import T0
from intake.conversations import NormalizedMessage
from intake.distribution import URGENT_SCORE
from intake.models import (
    Conversation,
    ConversationEvent,
    ConversationStatus,
    OperatorStatus,
    TriageState,
)
from intake.notifications import SLA_RESPONSE_EVENT
from intake.reconciliation import SweepRunner
from intake.services import build_services

CNPJ_TEXT = "CNPJ 11.222.333/0001-81"


def _reload(session, conversation_id):
    session.expire_all()
    return session.get(Conversation, conversation_id)


def test_retries_errored_conversations_past_their_deadline(session, services, factory):
    due = factory.conversation(
        "1",
        text=CNPJ_TEXT,
        triage_state=TriageState.ERRORED,
        triage_attempts=1,
        triage_retry_at=T0 - timedelta(seconds=1),
    )
    later = factory.conversation(
        "2",
        text=CNPJ_TEXT,
        triage_state=TriageState.ERRORED,
        triage_attempts=1,
        triage_retry_at=T0 + timedelta(minutes=5),
    )

    report = services.sweeper.sweep()

    assert report.retried == [due.id]
    assert _reload(session, due.id).triage_state is TriageState.QUEUED
    assert _reload(session, later.id).triage_state is TriageState.ERRORED


def test_resumes_conversations_stuck_mid_triage(session, services, factory):
    stuck = factory.conversation(
        "1",
        text=CNPJ_TEXT,
        triage_state=TriageState.WALLET_CHECK,
        triage_updated_at=T0 - timedelta(minutes=5),
    )
    busy = factory.conversation(
        "2",
        text=CNPJ_TEXT,
        triage_state=TriageState.WALLET_CHECK,
        triage_updated_at=T0 - timedelta(seconds=10),
    )

    report = services.sweeper.sweep()

    assert report.resumed == [stuck.id]
    assert _reload(session, stuck.id).triage_state is TriageState.QUEUED
    assert _reload(session, busy.id).triage_state is TriageState.WALLET_CHECK


def test_resumes_identifier_wait_after_timeout(session, services, factory, classifier):
    waiting = factory.conversation(
        text="bom dia",
        triage_state=TriageState.AWAITING_IDENTIFIER,
        identifier_requested_at=T0 - timedelta(minutes=11),
        triage_updated_at=T0 - timedelta(minutes=11),
    )

    report = services.sweeper.sweep()

    assert report.resumed == [waiting.id]
    assert classifier.calls
    assert _reload(session, waiting.id).triage_state is TriageState.QUEUED


def test_requeues_queued_conversation_without_entry(session, services, factory):
    queue = factory.queue()
    orphan = factory.conversation(
        triage_state=TriageState.QUEUED, assigned_queue_id=queue.id
    )

    report = services.sweeper.sweep()

    assert report.requeued == [orphan.id]
    assert services.queue.active_entry(orphan.id).target_queue_id == queue.id


def test_releases_operators_offline_past_grace(session, services, factory):
    gone = factory.operator(
        "Gone",
        status=OperatorStatus.OFFLINE,
        status_changed_at=T0 - timedelta(minutes=15),
    )
    brief = factory.operator(
        "Brief",
        status=OperatorStatus.OFFLINE,
        status_changed_at=T0 - timedelta(minutes=1),
    )
    backup = factory.operator("Backup")
    held = factory.conversation(
        "1",
        text="oi",
        status=ConversationStatus.OPEN,
        assigned_operator_id=gone.id,
        assigned_at=T0 - timedelta(hours=1),
        triage_state=TriageState.ROUTED,
    )
    kept = factory.conversation(
        "2",
        text="oi",
        status=ConversationStatus.OPEN,
        assigned_operator_id=brief.id,
        assigned_at=T0 - timedelta(hours=1),
        triage_state=TriageState.ROUTED,
    )

    report = services.sweeper.sweep()

    assert report.released == [held.id]
    assert _reload(session, held.id).assigned_operator_id == backup.id
    assert _reload(session, kept.id).assigned_operator_id == brief.id


def test_escalates_entries_past_sla(session, services, factory):
    conversation = factory.conversation(triage_state=TriageState.QUEUED)
    entry = services.queue.enqueue(conversation.id, at=T0 - timedelta(minutes=6))
    session.commit()

    report = services.sweeper.sweep()

    assert report.escalated == [entry.id]
    refreshed = services.queue.get(entry.id)
    assert refreshed.sla_breached is True
    assert refreshed.priority == URGENT_SCORE


def test_rematches_stale_entries_and_second_sweep_is_quiet(session, services, factory):
    conversation = factory.conversation(triage_state=TriageState.QUEUED)
    services.queue.enqueue(conversation.id, at=T0 - timedelta(minutes=15))
    session.commit()
    operator = factory.operator()

    first = services.sweeper.sweep()
    second = services.sweeper.sweep()

    assert first.rematched == [conversation.id]
    assert _reload(session, conversation.id).assigned_operator_id == operator.id
    assert second.as_dict() == {
        "retried": [],
        "resumed": [],
        "requeued": [],
        "released": [],
        "escalated": [],
        "response_breaches": [],
        "resolution_breaches": [],
        "rematched": [],
        "drained": 0,
        "failures": 0,
    }


def test_stale_entry_does_not_overtake_higher_priority(session, services, factory):
    urgent = factory.conversation("1", triage_state=TriageState.QUEUED)
    old = factory.conversation("2", triage_state=TriageState.QUEUED)
    services.queue.enqueue(urgent.id, priority=30, at=T0 - timedelta(minutes=1))
    old_entry = services.queue.enqueue(old.id, priority=20, at=T0 - timedelta(minutes=15))
    session.commit()
    operator = factory.operator(capacity=1)

    report = services.sweeper.sweep()

    assert _reload(session, urgent.id).assigned_operator_id == operator.id
    assert _reload(session, old.id).assigned_operator_id is None
    assert report.rematched == []
    assert report.drained == 1
    assert services.queue.get(old_entry.id).match_attempts == 1


def test_stale_entry_skipped_by_drain_still_counts_attempt(session, services, factory):
    head = factory.conversation("1", triage_state=TriageState.QUEUED)
    old = factory.conversation("2", triage_state=TriageState.QUEUED)
    services.queue.enqueue(head.id, priority=30, at=T0 - timedelta(minutes=1))
    old_entry = services.queue.enqueue(old.id, priority=20, at=T0 - timedelta(minutes=15))
    session.commit()

    services.sweeper.sweep()

    refreshed = services.queue.get(old_entry.id)
    assert refreshed.resolved_at is None
    assert refreshed.match_attempts == 1
    assert refreshed.last_attempt_at == T0


def _events(session, event_type):
    session.expire_all()
    return list(
        session.scalars(
            select(ConversationEvent)
            .where(ConversationEvent.event_type == event_type)
            .order_by(ConversationEvent.id)
        )
    )


def test_unanswered_conversation_raises_response_alert_once(
    session, services, factory, notifier, clock
):
    operator = factory.operator()
    waiting = factory.conversation(
        status=ConversationStatus.OPEN,
        assigned_operator_id=operator.id,
        triage_state=TriageState.ROUTED,
        last_inbound_at=T0 - timedelta(minutes=6),
    )

    first = services.sweeper.sweep()
    second = services.sweeper.sweep()

    assert first.response_breaches == [waiting.id]
    assert second.response_breaches == []
    [event] = _events(session, "sla_response_breached")
    assert event.conversation_id == waiting.id
    assert event.operator_id == operator.id
    assert event.data == {"waited_seconds": 360, "limit_seconds": 300}
    assert notifier.alerts == [(operator.id, waiting.id, SLA_RESPONSE_EVENT)]

    clock.advance(minutes=1)
    services.conversations.process_incoming_message(
        NormalizedMessage(
            channel="whatsapp",
            channel_account_ref="phone-1",
            contact_ref=waiting.contact_ref,
            text="ainda aguardando",
            sent_at=clock(),
        )
    )
    clock.advance(minutes=5)

    assert services.sweeper.sweep().response_breaches == [waiting.id]
    assert len(_events(session, "sla_response_breached")) == 2


def test_replied_conversation_has_no_response_alert(session, services, factory):
    operator = factory.operator()
    factory.conversation(
        status=ConversationStatus.OPEN,
        assigned_operator_id=operator.id,
        triage_state=TriageState.ROUTED,
        last_inbound_at=T0 - timedelta(minutes=10),
        last_outbound_at=T0 - timedelta(minutes=8),
    )

    assert services.sweeper.sweep().response_breaches == []


def test_long_open_conversation_raises_resolution_alert_once(session, services, factory):
    operator = factory.operator(capacity=5)
    overdue = factory.conversation(
        "1",
        status=ConversationStatus.OPEN,
        assigned_operator_id=operator.id,
        triage_state=TriageState.ROUTED,
        created_at=T0 - timedelta(hours=25),
    )
    factory.conversation(
        "2",
        status=ConversationStatus.CLOSED,
        triage_state=TriageState.ROUTED,
        created_at=T0 - timedelta(hours=30),
    )

    first = services.sweeper.sweep()
    second = services.sweeper.sweep()

    assert first.resolution_breaches == [overdue.id]
    assert second.resolution_breaches == []
    [event] = _events(session, "sla_resolution_breached")
    assert event.data == {"open_seconds": 90000, "limit_seconds": 86400}


def test_runner_ticks_on_background_thread(session_factory, settings, collaborators, clock):
    ticked = threading.Event()

    def build(session):
        ticked.set()
        return build_services(session, settings, collaborators, clock=clock).sweeper

    runner = SweepRunner(session_factory, build, interval=0.01)
    runner.start()
    try:
        assert ticked.wait(5)
        assert runner.running
    finally:
        runner.stop(timeout=5)
    assert not runner.running


def test_run_once_propagates_failures(session_factory):
    def build(session):
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError):
        SweepRunner(session_factory, build).run_once()
