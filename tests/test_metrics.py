from datetime import timedelta

import pytest

from conftest import T0
from intake.metrics import UNTARGETED
from intake.models import ConversationStatus, OperatorStatus, TriageState


def test_empty_store_reports_full_compliance(services):
    snapshot = services.metrics.snapshot()

    assert snapshot.generated_at == T0
    assert snapshot.queue_total == 0
    assert snapshot.sla_compliance_pct == 100.0
    assert snapshot.max_wait_seconds == 0.0
    assert snapshot.operators_by_status == {
        "online": 0,
        "busy": 0,
        "away": 0,
        "offline": 0,
    }


def test_waiting_entries_are_grouped_by_queue(session, services, factory):
    queue = factory.queue()
    for contact, minutes, target in (("1", 1, queue.id), ("2", 10, queue.id), ("3", 0.5, None)):
        conversation = factory.conversation(contact, triage_state=TriageState.QUEUED)
        services.queue.enqueue(
            conversation.id, queue_id=target, at=T0 - timedelta(minutes=minutes)
        )
    session.commit()

    snapshot = services.metrics.snapshot()

    assert snapshot.queue_total == 3
    assert snapshot.max_wait_seconds == 600.0
    assert snapshot.sla_breaches == 1
    stats = snapshot.queues[str(queue.id)]
    assert stats.waiting == 2
    assert stats.avg_wait_seconds == pytest.approx(330.0)
    assert stats.sla_breaches == 1
    assert snapshot.queues[UNTARGETED].waiting == 1
    assert snapshot.avg_wait_seconds == pytest.approx(230.0)


def test_sla_compliance_counts_claims_within_threshold(session, services, factory):
    quick = factory.conversation("1", triage_state=TriageState.QUEUED)
    slow = factory.conversation("2", triage_state=TriageState.QUEUED)
    services.queue.enqueue(quick.id, at=T0 - timedelta(seconds=100))
    services.queue.enqueue(slow.id, at=T0 - timedelta(seconds=400))
    session.commit()
    factory.operator(capacity=2)

    assert len(services.matcher.drain()) == 2
    snapshot = services.metrics.snapshot()

    assert snapshot.queue_total == 0
    assert snapshot.sla_compliance_pct == 50.0
    assert snapshot.assigned_today == 2
    assert snapshot.conversations_in_progress == 2


def test_operator_and_conversation_counts(factory, services):
    factory.operator("Ana")
    factory.operator("Bruno", status=OperatorStatus.AWAY)
    factory.operator("Carla", status=OperatorStatus.OFFLINE)
    factory.conversation(
        "1",
        status=ConversationStatus.OPEN,
        assigned_at=T0 - timedelta(days=1),
        sentiment="negative",
    )
    factory.conversation("2", sentiment="negative")
    factory.conversation("3")
    factory.conversation(
        "4", created_at=T0 - timedelta(days=3), sentiment="positive"
    )

    snapshot = services.metrics.snapshot()

    assert snapshot.operators_by_status["online"] == 1
    assert snapshot.operators_by_status["away"] == 1
    assert snapshot.operators_by_status["offline"] == 1
    assert snapshot.conversations_in_progress == 1
    assert snapshot.assigned_today == 0
    assert snapshot.sentiment == {"negative": 2, "unknown": 1}


def test_wait_equal_to_threshold_is_a_breach(session, services, factory):
    conversation = factory.conversation(triage_state=TriageState.QUEUED)
    services.queue.enqueue(conversation.id, at=T0 - timedelta(seconds=300))
    session.commit()

    assert services.metrics.snapshot().sla_breaches == 1

    factory.operator()
    assert len(services.matcher.drain()) == 1
    assert services.metrics.snapshot().sla_compliance_pct == 0.0


def test_response_and_resolution_breaches(factory, services):
    ana = factory.operator("Ana")
    served = {"status": ConversationStatus.OPEN, "assigned_operator_id": ana.id}
    factory.conversation(
        "1",
        last_inbound_at=T0 - timedelta(minutes=10),
        last_outbound_at=T0 - timedelta(minutes=20),
        **served,
    )
    factory.conversation(
        "2",
        last_inbound_at=T0 - timedelta(minutes=10),
        last_outbound_at=T0 - timedelta(minutes=5),
        **served,
    )
    factory.conversation("3", last_inbound_at=T0 - timedelta(minutes=1), **served)
    factory.conversation("4", created_at=T0 - timedelta(days=2))
    factory.conversation(
        "5", status=ConversationStatus.CLOSED, created_at=T0 - timedelta(days=2)
    )

    snapshot = services.metrics.snapshot()

    assert snapshot.response_sla_breaches == 1
    assert snapshot.resolution_sla_breaches == 1
