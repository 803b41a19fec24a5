from __future__ import annotations

import os

from scholarship_alerts.config import Settings, get_settings, runtime_secret_issues


def _set_env(name: str, value: str | None) -> str | None:
    previous = os.environ.get(name)
    if value is None:
        os.environ.pop(name, None)
    else:
        os.environ[name] = value
    return previous


def _restore_env(name: str, previous: str | None) -> None:
    if previous is None:
        os.environ.pop(name, None)
    else:
        os.environ[name] = previous


def _production_settings(**overrides) -> Settings:
    values = {
        "action_token_secret": "prod-action-secret-001",
        "cron_secret": "prod-cron-secret-001",
        "service_api_secret": "prod-service-secret-001",
    }
    values.update(overrides)
    return Settings(**values)


def test_default_settings_report_placeholder_secrets() -> None:
    issues = runtime_secret_issues(Settings())

    assert any("ALERT_ACTION_TOKEN_SECRET" in issue for issue in issues)
    assert any("CRON_SECRET" in issue for issue in issues)
    assert any("ALERTS_SERVICE_SECRET" in issue for issue in issues)


def test_production_secrets_have_no_issues() -> None:
    assert runtime_secret_issues(_production_settings()) == ()


def test_ttl_above_maximum_is_reported() -> None:
    issues = runtime_secret_issues(
        _production_settings(action_token_ttl_minutes=500, action_token_max_ttl_minutes=100)
    )
    assert issues == ("ALERT_ACTION_TOKEN_TTL_MINUTES exceeds ALERT_ACTION_TOKEN_MAX_TTL_MINUTES",)


def test_unsupported_thresholds_are_reported() -> None:
    settings = _production_settings(deadline_alert_thresholds=(5, 2))

    assert settings.effective_deadline_thresholds() == ()
    issues = runtime_secret_issues(settings)
    assert len(issues) == 1
    assert issues[0].startswith("DEADLINE_ALERT_THRESHOLDS has no supported values")


def test_http_notifier_requires_url_and_key() -> None:
    issues = runtime_secret_issues(_production_settings(notifier_sender_type="http"))

    assert "NOTIFIER_API_BASE_URL is required when NOTIFIER_SENDER_TYPE=http" in issues
    assert "NOTIFIER_API_KEY is required when NOTIFIER_SENDER_TYPE=http" in issues


def test_postgres_backend_requires_database_url() -> None:
    issues = runtime_secret_issues(_production_settings(alert_store_backend="postgres"))

    assert issues == ("DATABASE_URL is required when a store backend is postgres",)


def test_get_settings_parses_threshold_lists() -> None:
    previous_thresholds = _set_env("DEADLINE_ALERT_THRESHOLDS", "3, 30,7,3")
    previous_windows = _set_env("RECOMMENDATION_REMINDER_DAYS", "not-a-number")
    try:
        settings = get_settings()
        assert settings.deadline_alert_thresholds == (30, 7, 3)
        assert settings.recommendation_reminder_days == (7,)
    finally:
        _restore_env("DEADLINE_ALERT_THRESHOLDS", previous_thresholds)
        _restore_env("RECOMMENDATION_REMINDER_DAYS", previous_windows)


def test_get_settings_normalizes_modes() -> None:
    previous_guard = _set_env("RUNTIME_SECRET_GUARD_MODE", " ENFORCE ")
    previous_sender = _set_env("NOTIFIER_SENDER_TYPE", "carrier-pigeon")
    try:
        settings = get_settings()
        assert settings.runtime_secret_guard_mode == "enforce"
        assert settings.notifier_sender_type == "stub"
    finally:
        _restore_env("RUNTIME_SECRET_GUARD_MODE", previous_guard)
        _restore_env("NOTIFIER_SENDER_TYPE", previous_sender)
