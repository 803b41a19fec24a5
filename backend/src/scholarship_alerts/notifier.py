from __future__ import annotations

import json
import socket
import urllib.error
import urllib.request
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Literal, Protocol

from .models import AlertKind

NotificationStatus = Literal["sent", "failed"]


@dataclass(frozen=True)
class AlertNotification:
    """Template key plus the context the external mail renderer needs.

    Action links are fully formed URLs; the notifier never sees raw secrets.
    """

    alert_id: str
    kind: AlertKind
    template: str
    recipient_name: str
    recipient_email: str
    subject: str
    context: dict[str, object] = field(default_factory=dict)
    action_links: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class NotificationResult:
    status: NotificationStatus
    attempted_at: datetime
    provider_message_id: str | None = None
    error_code: str | None = None
    error_message: str | None = None


class NotifierSender(Protocol):
    def send_alert(self, notification: AlertNotification) -> NotificationResult: ...


class StubNotifierSender:
    def __init__(self, *, enabled: bool) -> None:
        self._enabled = enabled
        self.sent: list[AlertNotification] = []

    def send_alert(self, notification: AlertNotification) -> NotificationResult:
        attempted_at = datetime.now(timezone.utc)

        if not self._enabled:
            return NotificationResult(
                status="failed",
                attempted_at=attempted_at,
                error_code="notifier_disabled",
                error_message="Alert email delivery is disabled",
            )

        if "fail" in notification.recipient_email.lower():
            return NotificationResult(
                status="failed",
                attempted_at=attempted_at,
                error_code="stub_delivery_failed",
                error_message="Stub sender forced failure for recipient",
            )

        self.sent.append(notification)
        message_id = f"stub-{notification.alert_id}-{int(attempted_at.timestamp())}"
        return NotificationResult(status="sent", attempted_at=attempted_at, provider_message_id=message_id)


class _NotifierSendError(Exception):
    """Internal error raised when a delivery HTTP request fails."""

    def __init__(self, error_code: str, message: str) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.message = message


class HttpNotifierSender:
    """Posts rendered-alert requests to the external email delivery service."""

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str,
        timeout_seconds: int = 10,
    ) -> None:
        stripped_url = base_url.strip().rstrip("/")
        stripped_key = api_key.strip()
        if not stripped_url:
            raise ValueError("base_url must not be empty")
        if not stripped_key:
            raise ValueError("api_key must not be empty")
        self._base_url = stripped_url
        self._api_key = stripped_key
        self._timeout_seconds = timeout_seconds

    def send_alert(self, notification: AlertNotification) -> NotificationResult:
        attempted_at = datetime.now(timezone.utc)
        request_payload = {
            "channel": "email",
            "recipient": notification.recipient_email,
            "recipient_name": notification.recipient_name,
            "template": notification.template,
            "subject": notification.subject,
            "context": notification.context,
            "action_links": notification.action_links,
            "idempotency_key": f"alert-{notification.alert_id}",
        }

        try:
            response_data = self._post(request_payload)
        except _NotifierSendError as exc:
            masked = mask_contact_target(notification.recipient_email)
            return NotificationResult(
                status="failed",
                attempted_at=attempted_at,
                error_code=exc.error_code,
                error_message=f"{exc.message} (recipient: {masked})",
            )
        return NotificationResult(
            status="sent",
            attempted_at=attempted_at,
            provider_message_id=response_data.get("message_id"),
        )

    def _post(self, body: dict[str, object]) -> dict[str, str]:
        url = f"{self._base_url}/v1/emails/send"
        data = json.dumps(body, default=str).encode("utf-8")
        request = urllib.request.Request(
            url,
            data=data,
            headers={
                "Authorization": f"Bearer {self._api_key}",
                "Content-Type": "application/json",
            },
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=self._timeout_seconds) as response:
                return json.loads(response.read().decode("utf-8"))  # type: ignore[no-any-return]
        except urllib.error.HTTPError as exc:
            raise _NotifierSendError(
                error_code=f"http_{exc.code}",
                message=f"HTTP {exc.code}: {exc.reason}",
            ) from exc
        except urllib.error.URLError as exc:
            raise _NotifierSendError(
                error_code="connection_error",
                message=f"Connection error: {exc.reason}",
            ) from exc
        except (socket.timeout, TimeoutError) as exc:
            raise _NotifierSendError(
                error_code="timeout",
                message=f"Request timed out: {exc}",
            ) from exc


def mask_contact_target(contact_target: str | None) -> str:
    normalized = contact_target.strip() if isinstance(contact_target, str) else ""
    if not normalized:
        return "***"

    if "@" in normalized:
        local, domain = normalized.split("@", 1)
        if len(local) <= 1:
            return f"*@{domain}"
        return f"{local[0]}***@{domain}"

    if len(normalized) <= 4:
        return "*" * len(normalized)

    return f"{normalized[:2]}***{normalized[-2:]}"
