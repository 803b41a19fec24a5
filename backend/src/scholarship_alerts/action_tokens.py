from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from .models import ALERT_ACTIONS, AlertAction


class ActionTokenError(ValueError):
    """Base class for alert action-link token failures."""


class ActionTokenInvalid(ActionTokenError):
    """Raised when a token is malformed or its signature does not match."""


class ActionTokenExpired(ActionTokenError):
    """Raised when a correctly signed token is past its expiry."""


class ActionTokenMismatch(ActionTokenError):
    """Raised when a token was issued for a different action than the one invoked."""


@dataclass(frozen=True, slots=True)
class ActionTokenPayload:
    alert_id: str
    action: AlertAction
    issued_at: datetime
    expires_at: datetime


def _b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def _b64url_decode(data: str) -> bytes:
    padding = "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(f"{data}{padding}".encode("ascii"))


class ActionTokenCodec:
    """Signs and verifies stateless alert action links (HMAC-SHA256)."""

    def __init__(self, *, secret: str, max_ttl_minutes: int) -> None:
        if not secret:
            raise ActionTokenError("action token secret is empty")
        if max_ttl_minutes <= 0:
            raise ActionTokenError("action token max ttl must be positive")
        self._secret = secret.encode("utf-8")
        self._max_ttl_minutes = max_ttl_minutes

    def _sign(self, payload_b64: str) -> str:
        return hmac.new(self._secret, payload_b64.encode("ascii"), hashlib.sha256).hexdigest()

    def issue(
        self,
        alert_id: str,
        action: AlertAction,
        *,
        ttl_minutes: int,
        now: datetime | None = None,
    ) -> str:
        if not alert_id:
            raise ActionTokenError("alert_id is required")
        if action not in ALERT_ACTIONS:
            raise ActionTokenError(f"unsupported action: {action}")
        effective_ttl = min(ttl_minutes, self._max_ttl_minutes)
        if effective_ttl <= 0:
            raise ActionTokenError("token ttl must be positive")

        issued_at = now or datetime.now(timezone.utc)
        expires_at = issued_at + timedelta(minutes=effective_ttl)
        payload_json = json.dumps(
            {
                "act": action,
                "aid": alert_id,
                "exp": int(expires_at.timestamp()),
                "iat": int(issued_at.timestamp()),
            },
            separators=(",", ":"),
            sort_keys=True,
        ).encode("utf-8")
        payload_b64 = _b64url_encode(payload_json)
        return f"{payload_b64}.{self._sign(payload_b64)}"

    def decode(self, token: str, *, now: datetime | None = None) -> ActionTokenPayload:
        if not token or "." not in token or not token.isascii():
            raise ActionTokenInvalid("invalid token format")

        payload_b64, signature = token.rsplit(".", 1)
        if not hmac.compare_digest(signature, self._sign(payload_b64)):
            raise ActionTokenInvalid("token signature mismatch")

        try:
            payload_obj = json.loads(_b64url_decode(payload_b64).decode("utf-8"))
        except (binascii.Error, UnicodeDecodeError, ValueError) as exc:
            raise ActionTokenInvalid("token payload decoding failed") from exc
        if not isinstance(payload_obj, dict):
            raise ActionTokenInvalid("token payload decoding failed")

        alert_id = str(payload_obj.get("aid", "")).strip()
        if not alert_id:
            raise ActionTokenInvalid("token alert id missing")

        action = payload_obj.get("act")
        if action not in ALERT_ACTIONS:
            raise ActionTokenInvalid("token action invalid")

        try:
            expires_at = datetime.fromtimestamp(int(payload_obj["exp"]), tz=timezone.utc)
            issued_at = datetime.fromtimestamp(int(payload_obj["iat"]), tz=timezone.utc)
        except (KeyError, TypeError, ValueError, OverflowError) as exc:
            raise ActionTokenInvalid("token timestamps missing") from exc

        reference_now = now or datetime.now(timezone.utc)
        if expires_at <= reference_now:
            raise ActionTokenExpired("token expired")

        return ActionTokenPayload(
            alert_id=alert_id,
            action=action,
            issued_at=issued_at,
            expires_at=expires_at,
        )

    def verify(
        self,
        token: str,
        *,
        expected_action: AlertAction,
        now: datetime | None = None,
    ) -> ActionTokenPayload:
        payload = self.decode(token, now=now)
        if payload.action != expected_action:
            raise ActionTokenMismatch(
                f"token issued for {payload.action}, not {expected_action}"
            )
        return payload
