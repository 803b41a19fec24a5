from __future__ import annotations

import json
import socket
import urllib.error
from datetime import timezone
from unittest.mock import MagicMock, patch

import pytest

from scholarship_alerts.notifier import (
    AlertNotification,
    HttpNotifierSender,
    StubNotifierSender,
    mask_contact_target,
)


def _make_notification(*, recipient_email: str = "ada@example.com") -> AlertNotification:
    return AlertNotification(
        alert_id="alrt_000001",
        kind="deadline-3d",
        template="deadline-reminder",
        recipient_name="Ada Student",
        recipient_email=recipient_email,
        subject="STEM Futures is due in 3 days",
        context={"scholarship_name": "STEM Futures", "days_until_deadline": 3},
        action_links={
            "snooze": "https://alerts.test/api/v1/alerts/actions/snooze?token=abc",
            "dismiss": "https://alerts.test/api/v1/alerts/actions/dismiss?token=def",
        },
    )


def _make_sender(
    *,
    base_url: str = "https://mail.example.test/",
    api_key: str = "test-api-key-abc123",
) -> HttpNotifierSender:
    return HttpNotifierSender(base_url=base_url, api_key=api_key)


def _mock_response(body: dict[str, str], status: int = 200) -> MagicMock:
    """Create a mock HTTP response that works as a context manager."""
    response = MagicMock()
    response.status = status
    response.read.return_value = json.dumps(body).encode("utf-8")
    response.__enter__ = MagicMock(return_value=response)
    response.__exit__ = MagicMock(return_value=False)
    return response


@patch("scholarship_alerts.notifier.urllib.request.urlopen")
def test_http_sender_success(mock_urlopen: MagicMock) -> None:
    mock_urlopen.return_value = _mock_response({"message_id": "msg-123"})

    result = _make_sender().send_alert(_make_notification())

    assert result.status == "sent"
    assert result.provider_message_id == "msg-123"
    assert result.attempted_at.tzinfo == timezone.utc
    assert result.error_code is None
    mock_urlopen.assert_called_once()

    request_arg = mock_urlopen.call_args[0][0]
    assert request_arg.full_url == "https://mail.example.test/v1/emails/send"
    assert request_arg.get_header("Authorization") == "Bearer test-api-key-abc123"
    assert request_arg.get_header("Content-type") == "application/json"

    sent_body = json.loads(request_arg.data.decode("utf-8"))
    assert sent_body["recipient"] == "ada@example.com"
    assert sent_body["template"] == "deadline-reminder"
    assert sent_body["context"]["scholarship_name"] == "STEM Futures"
    assert set(sent_body["action_links"]) == {"snooze", "dismiss"}
    assert sent_body["idempotency_key"] == "alert-alrt_000001"


@patch("scholarship_alerts.notifier.urllib.request.urlopen")
def test_http_sender_http_500(mock_urlopen: MagicMock) -> None:
    mock_urlopen.side_effect = urllib.error.HTTPError(
        url="https://mail.example.test/v1/emails/send",
        code=500,
        msg="Internal Server Error",
        hdrs={},  # type: ignore[arg-type]
        fp=None,
    )

    result = _make_sender().send_alert(_make_notification())

    assert result.status == "failed"
    assert result.error_code == "http_500"
    assert result.error_message is not None
    assert "500" in result.error_message
    assert "ada@example.com" not in result.error_message
    assert "a***@example.com" in result.error_message


@patch("scholarship_alerts.notifier.urllib.request.urlopen")
def test_http_sender_connection_error(mock_urlopen: MagicMock) -> None:
    mock_urlopen.side_effect = urllib.error.URLError("Connection refused")

    result = _make_sender().send_alert(_make_notification())

    assert result.status == "failed"
    assert result.error_code == "connection_error"
    assert "Connection" in (result.error_message or "")


@patch("scholarship_alerts.notifier.urllib.request.urlopen")
def test_http_sender_timeout(mock_urlopen: MagicMock) -> None:
    mock_urlopen.side_effect = socket.timeout("timed out")

    result = _make_sender().send_alert(_make_notification())

    assert result.status == "failed"
    assert result.error_code == "timeout"
    assert "timed out" in (result.error_message or "")


def test_http_sender_empty_base_url() -> None:
    with pytest.raises(ValueError, match="base_url must not be empty"):
        HttpNotifierSender(base_url="", api_key="test-key")


def test_http_sender_empty_api_key() -> None:
    with pytest.raises(ValueError, match="api_key must not be empty"):
        HttpNotifierSender(base_url="https://mail.example.test", api_key=" ")


def test_stub_sender_records_and_fails_on_demand() -> None:
    sender = StubNotifierSender(enabled=True)

    ok = sender.send_alert(_make_notification())
    failed = sender.send_alert(_make_notification(recipient_email="fail@example.com"))

    assert ok.status == "sent"
    assert ok.provider_message_id is not None
    assert failed.status == "failed"
    assert failed.error_code == "stub_delivery_failed"
    assert [notification.recipient_email for notification in sender.sent] == ["ada@example.com"]


def test_disabled_stub_sender_does_not_deliver() -> None:
    sender = StubNotifierSender(enabled=False)

    result = sender.send_alert(_make_notification())

    assert result.status == "failed"
    assert result.error_code == "notifier_disabled"
    assert sender.sent == []


@pytest.mark.parametrize(
    ("target", "masked"),
    [
        ("ada@example.com", "a***@example.com"),
        ("a@example.com", "*@example.com"),
        ("+15555550123", "+1***23"),
        ("1234", "****"),
        ("  ", "***"),
        (None, "***"),
    ],
)
def test_mask_contact_target(target: str | None, masked: str) -> None:
    assert mask_contact_target(target) == masked
