import uuid

import pytest
import requests

from intake.notifications import (
    SLA_RESPONSE_EVENT,
    LoggingNotifier,
    WebhookNotifier,
    safe_notify,
)


class _Response:
    def __init__(self, status_code: int = 200) -> None:
        self.status_code = status_code

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")


class _Session:
    def __init__(self, response: _Response) -> None:
        self.response = response
        self.calls: list[tuple[str, dict, float]] = []

    def post(self, url, json, timeout):
        self.calls.append((url, json, timeout))
        return self.response


def test_webhook_notifier_posts_assignment():
    session = _Session(_Response())
    operator_id = uuid.uuid4()

    WebhookNotifier("https://push.example/hook", session=session, timeout=2.0).notify(
        operator_id, 7
    )

    assert session.calls == [
        (
            "https://push.example/hook",
            {
                "event": "conversation.assigned",
                "operator_id": str(operator_id),
                "conversation_id": 7,
            },
            2.0,
        )
    ]


def test_webhook_notifier_raises_on_error_status():
    notifier = WebhookNotifier("https://push.example/hook", session=_Session(_Response(502)))

    with pytest.raises(requests.HTTPError):
        notifier.notify(uuid.uuid4(), 1)


def test_safe_notify_logs_instead_of_raising(caplog):
    notifier = WebhookNotifier("https://push.example/hook", session=_Session(_Response(500)))

    assert safe_notify(notifier, uuid.uuid4(), 3) is False
    assert "Notification conversation.assigned for conversation 3" in caplog.text
    assert safe_notify(LoggingNotifier(), uuid.uuid4(), 3) is True


def test_failed_notification_keeps_assignment(session, services, factory, notifier):
    notifier.fail = True
    operator = factory.operator()
    conversation = factory.conversation()

    result = services.matcher.try_assign(conversation.id, reason="test")

    assert result.operator_id == operator.id
    assert services.registry.current_load(operator.id) == 1


def test_webhook_notifier_forwards_event_kind():
    session = _Session(_Response())

    WebhookNotifier("https://push.example/hook", session=session).notify(
        uuid.uuid4(), 9, event=SLA_RESPONSE_EVENT
    )

    assert session.calls[0][1]["event"] == "conversation.sla_response_breached"
