import uuid

import pytest
from fastapi.testclient import TestClient

from intake.__version__ import __version__
from intake.main import create_app
from intake.models import ConversationStatus, OperatorStatus, TriageState
from intake.routers.context import limiter

INBOUND = {"contact_ref": "5511999990000", "channel_account_ref": "phone-1"}


@pytest.fixture
def client(monkeypatch, tmp_path, settings, session_factory, collaborators, clock):
    monkeypatch.setenv("LOG_DIR", str(tmp_path / "logs"))
    monkeypatch.delenv("ADMIN_UI_ORIGINS", raising=False)
    limiter.reset()
    app = create_app(settings, session_factory, collaborators, clock=clock)
    with TestClient(app) as client:
        yield client


def _ingest(client, text, **extra):
    resp = client.post("/api/conversations/inbound", json={**INBOUND, "text": text, **extra})
    assert resp.status_code == 200, resp.text
    return resp.json()


def test_health_and_version(client):
    assert client.get("/api/health").json() == {"status": "ok"}
    body = client.get("/api/version").json()
    assert body["version"] == __version__
    assert set(body) == {"version", "build_date", "commit_sha"}


def test_inbound_message_opens_conversation(client, requester):
    body = _ingest(client, "bom dia", contact_name="Maria")

    conversation = body["conversation"]
    assert conversation["contact_name"] == "Maria"
    assert conversation["window"]["is_open"] is True
    assert conversation["window"]["remaining_seconds"] == 24 * 3600
    assert body["triage"]["state"] == TriageState.AWAITING_IDENTIFIER.value
    assert body["processed_messages"] == 1
    assert requester.requests == [(conversation["id"], "5511999990000")]


def test_inbound_rejects_missing_contact(client):
    resp = client.post("/api/conversations/inbound", json={"channel_account_ref": "x"})
    assert resp.status_code == 422


def test_conversation_detail_window_and_outbound(client):
    conversation_id = _ingest(client, "oi")["conversation"]["id"]

    resp = client.post(
        f"/api/conversations/{conversation_id}/outbound", json={"text": "Olá!"}
    )
    assert resp.status_code == 200
    assert [m["direction"] for m in resp.json()["messages"]] == ["inbound", "outbound"]

    limited = client.get(f"/api/conversations/{conversation_id}", params={"limit": 1})
    assert [m["body"] for m in limited.json()["messages"]] == ["Olá!"]

    window = client.get(f"/api/conversations/{conversation_id}/window").json()
    assert window["is_open"] is True

    expired = client.post(f"/api/conversations/{conversation_id}/window/expire", json={})
    assert expired.status_code == 200
    assert expired.json()["is_open"] is False
    assert expired.json()["remaining_seconds"] == 0


def test_unknown_conversation_is_404(client):
    assert client.get("/api/conversations/999").status_code == 404
    assert client.get("/api/conversations/999/window").status_code == 404
    assert client.post("/api/conversations/999/close").status_code == 404


def test_operator_coming_online_takes_queued_conversation(client, factory):
    operator = factory.operator(status=OperatorStatus.OFFLINE)
    conversation_id = _ingest(client, "CNPJ 11.222.333/0001-81")["conversation"]["id"]

    queue = client.get("/api/queue").json()
    assert queue["total"] == 1
    assert queue["items"][0]["conversation_id"] == conversation_id
    assert queue["items"][0]["wait_seconds"] == 0

    resp = client.put(f"/api/operators/{operator.id}/status", json={"status": "online"})
    assert resp.status_code == 200
    assert resp.json()["status"] == "online"
    assert resp.json()["load"] == 1

    detail = client.get(f"/api/conversations/{conversation_id}").json()
    assert detail["assigned_operator_id"] == str(operator.id)
    assert client.get("/api/queue").json()["total"] == 0


def test_list_operators(client, factory):
    support = factory.queue()
    factory.operator("Bruno", queues=(support,))
    factory.operator("Ana", status=OperatorStatus.AWAY)

    body = client.get("/api/operators").json()

    assert body["total"] == 2
    assert [op["name"] for op in body["items"]] == ["Ana", "Bruno"]
    assert body["items"][1]["queue_ids"] == [str(support.id)]


def test_status_update_validates_input(client, factory):
    operator = factory.operator()
    assert (
        client.put(f"/api/operators/{operator.id}/status", json={"status": "sleeping"}).status_code
        == 422
    )
    assert (
        client.put(f"/api/operators/{uuid.uuid4()}/status", json={"status": "online"}).status_code
        == 404
    )


def test_manual_assignment_and_transfer(client, factory):
    first = factory.operator("Ana")
    second = factory.operator("Bruno")
    away = factory.operator("Carla", status=OperatorStatus.AWAY)
    conversation_id = _ingest(client, "bom dia")["conversation"]["id"]

    assigned = client.post(
        f"/api/conversations/{conversation_id}/assign", json={"operator_id": str(first.id)}
    )
    assert assigned.status_code == 200
    assert assigned.json()["reason"] == "manual"

    transferred = client.post(
        f"/api/conversations/{conversation_id}/assign", json={"operator_id": str(second.id)}
    )
    assert transferred.json()["previous_operator_id"] == str(first.id)

    conflict = client.post(
        f"/api/conversations/{conversation_id}/assign", json={"operator_id": str(away.id)}
    )
    assert conflict.status_code == 409

    missing = client.post(
        f"/api/conversations/{conversation_id}/assign", json={"operator_id": str(uuid.uuid4())}
    )
    assert missing.status_code == 404


def test_release_requeues_operator_conversations(client, factory):
    operator = factory.operator()
    conversation_id = _ingest(client, "CNPJ 11.222.333/0001-81")["conversation"]["id"]
    client.put(f"/api/operators/{operator.id}/status", json={"status": "offline"})

    resp = client.post(f"/api/operators/{operator.id}/release")

    assert resp.status_code == 200
    assert resp.json()["requeued_conversation_ids"] == [conversation_id]
    assert client.get("/api/queue").json()["total"] == 1


def test_drain_bam_and_sweep(client):
    _ingest(client, "CNPJ 11.222.333/0001-81")

    assert client.post("/api/queue/drain").json() == {"assigned": []}

    bam = client.get("/api/bam").json()
    assert bam["queue_total"] == 1
    assert bam["sla_compliance_pct"] == 100.0

    report = client.post("/api/sweep").json()
    assert report["drained"] == 0
    assert report["failures"] == 0


def test_close_conversation(client, factory):
    operator = factory.operator()
    conversation_id = _ingest(client, "CNPJ 11.222.333/0001-81")["conversation"]["id"]

    closed = client.post(f"/api/conversations/{conversation_id}/close")
    assert closed.status_code == 200
    assert closed.json()["status"] == ConversationStatus.CLOSED.value

    again = client.post(
        f"/api/conversations/{conversation_id}/outbound", json={"text": "ainda aí?"}
    )
    assert again.status_code == 409
    operators = client.get("/api/operators").json()["items"]
    assert operators[0]["id"] == str(operator.id)
    assert operators[0]["load"] == 0
