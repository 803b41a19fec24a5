from __future__ import annotations

import os
from dataclasses import dataclass

ALLOWED_DEADLINE_THRESHOLDS = frozenset({30, 14, 7, 3, 1, 0})


def _as_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _as_int(value: str | None, default: int) -> int:
    if value is None:
        return default
    try:
        return int(value.strip())
    except ValueError:
        return default


def _as_float(value: str | None, default: float) -> float:
    if value is None:
        return default
    try:
        return float(value.strip())
    except ValueError:
        return default


def _as_int_tuple(value: str | None, default: tuple[int, ...]) -> tuple[int, ...]:
    if value is None:
        return default
    parsed: list[int] = []
    for item in value.split(","):
        item = item.strip()
        if not item:
            continue
        try:
            parsed.append(int(item))
        except ValueError:
            return default
    return tuple(sorted(set(parsed), reverse=True)) or default


def _normalize_mode(value: str | None, *, default: str, allowed: set[str]) -> str:
    if value is None:
        return default
    normalized = value.strip().lower()
    return normalized if normalized in allowed else default


def _is_placeholder(value: str, *, defaults: set[str]) -> bool:
    normalized = value.strip()
    if not normalized:
        return True
    if normalized in defaults:
        return True
    lower = normalized.lower()
    return lower in {"change-me", "replace-me", "placeholder", "changeme"}


@dataclass(frozen=True)
class Settings:
    app_name: str = "Scholarship Alerts"
    api_prefix: str = "/api/v1"
    app_base_url: str = "http://localhost:3000"
    public_api_base_url: str = "http://localhost:8000"
    action_token_secret: str = "dev-action-token-secret"
    action_token_ttl_minutes: int = 7 * 24 * 60
    action_token_max_ttl_minutes: int = 14 * 24 * 60
    cron_secret: str = "dev-cron-secret"
    service_api_secret: str = "dev-alerts-service-secret"
    alert_store_backend: str = "inmemory"
    job_run_store_backend: str = "inmemory"
    database_url: str = ""
    deadline_alert_thresholds: tuple[int, ...] = (7, 3)
    recommendation_reminder_days: tuple[int, ...] = (7,)
    at_risk_inactivity_days: int = 14
    at_risk_inactivity_window_days: int = 14
    notifier_enabled: bool = False
    notifier_sender_type: str = "stub"
    notifier_api_base_url: str = ""
    notifier_api_key: str = ""
    notifier_timeout_seconds: int = 10
    dispatch_timeout_seconds: float = 15.0
    runtime_secret_guard_mode: str = "warn"

    def effective_deadline_thresholds(self) -> tuple[int, ...]:
        return tuple(
            value for value in self.deadline_alert_thresholds if value in ALLOWED_DEADLINE_THRESHOLDS
        )


def get_settings() -> Settings:
    return Settings(
        app_name=os.getenv("ALERTS_APP_NAME", "Scholarship Alerts"),
        api_prefix=os.getenv("ALERTS_API_PREFIX", "/api/v1"),
        app_base_url=os.getenv("APP_BASE_URL", "http://localhost:3000"),
        public_api_base_url=os.getenv("ALERTS_PUBLIC_API_URL", "http://localhost:8000"),
        action_token_secret=os.getenv("ALERT_ACTION_TOKEN_SECRET", "dev-action-token-secret"),
        action_token_ttl_minutes=_as_int(os.getenv("ALERT_ACTION_TOKEN_TTL_MINUTES"), 7 * 24 * 60),
        action_token_max_ttl_minutes=_as_int(os.getenv("ALERT_ACTION_TOKEN_MAX_TTL_MINUTES"), 14 * 24 * 60),
        cron_secret=os.getenv("CRON_SECRET", "dev-cron-secret"),
        service_api_secret=os.getenv("ALERTS_SERVICE_SECRET", "dev-alerts-service-secret"),
        alert_store_backend=os.getenv("ALERT_STORE_BACKEND", "inmemory"),
        job_run_store_backend=os.getenv("JOB_RUN_STORE_BACKEND", "inmemory"),
        database_url=os.getenv("DATABASE_URL", ""),
        deadline_alert_thresholds=_as_int_tuple(os.getenv("DEADLINE_ALERT_THRESHOLDS"), (7, 3)),
        recommendation_reminder_days=_as_int_tuple(os.getenv("RECOMMENDATION_REMINDER_DAYS"), (7,)),
        at_risk_inactivity_days=_as_int(os.getenv("AT_RISK_INACTIVITY_DAYS"), 14),
        at_risk_inactivity_window_days=_as_int(os.getenv("AT_RISK_INACTIVITY_WINDOW_DAYS"), 14),
        notifier_enabled=_as_bool(os.getenv("NOTIFIER_ENABLED"), False),
        notifier_sender_type=_normalize_mode(
            os.getenv("NOTIFIER_SENDER_TYPE"),
            default="stub",
            allowed={"stub", "http"},
        ),
        notifier_api_base_url=os.getenv("NOTIFIER_API_BASE_URL", ""),
        notifier_api_key=os.getenv("NOTIFIER_API_KEY", ""),
        notifier_timeout_seconds=_as_int(os.getenv("NOTIFIER_TIMEOUT_SECONDS"), 10),
        dispatch_timeout_seconds=_as_float(os.getenv("ALERT_DISPATCH_TIMEOUT_SECONDS"), 15.0),
        runtime_secret_guard_mode=_normalize_mode(
            os.getenv("RUNTIME_SECRET_GUARD_MODE"),
            default="warn",
            allowed={"off", "warn", "enforce"},
        ),
    )


def runtime_secret_issues(settings: Settings) -> tuple[str, ...]:
    issues: list[str] = []
    if _is_placeholder(
        settings.action_token_secret,
        defaults={"dev-action-token-secret", "change-me-in-production"},
    ):
        issues.append("ALERT_ACTION_TOKEN_SECRET is empty or uses a development placeholder")
    if _is_placeholder(
        settings.cron_secret,
        defaults={"dev-cron-secret", "change-me-in-production"},
    ):
        issues.append("CRON_SECRET is empty or uses a development placeholder")
    if _is_placeholder(
        settings.service_api_secret,
        defaults={"dev-alerts-service-secret", "change-me-in-production"},
    ):
        issues.append("ALERTS_SERVICE_SECRET is empty or uses a development placeholder")
    if settings.action_token_ttl_minutes > settings.action_token_max_ttl_minutes:
        issues.append("ALERT_ACTION_TOKEN_TTL_MINUTES exceeds ALERT_ACTION_TOKEN_MAX_TTL_MINUTES")
    if not settings.effective_deadline_thresholds():
        issues.append(
            "DEADLINE_ALERT_THRESHOLDS has no supported values; "
            f"allowed: {','.join(str(value) for value in sorted(ALLOWED_DEADLINE_THRESHOLDS))}"
        )
    if settings.notifier_sender_type == "http":
        if not settings.notifier_api_base_url.strip():
            issues.append("NOTIFIER_API_BASE_URL is required when NOTIFIER_SENDER_TYPE=http")
        if not settings.notifier_api_key.strip():
            issues.append("NOTIFIER_API_KEY is required when NOTIFIER_SENDER_TYPE=http")
    if "postgres" in {settings.alert_store_backend, settings.job_run_store_backend} and not settings.database_url:
        issues.append("DATABASE_URL is required when a store backend is postgres")
    return tuple(issues)
