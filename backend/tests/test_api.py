from __future__ import annotations

from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs, urlparse

import pytest
from fastapi.testclient import TestClient

from scholarship_alerts import api as api_module
from scholarship_alerts.main import create_app
from scholarship_alerts.notifier import StubNotifierSender
from scholarship_alerts.scholarship_data import (
    ApplicationSnapshot,
    RecommendationRequestSnapshot,
    ScholarshipSnapshot,
    StudentSnapshot,
)

PREFIX = "/api/v1/alerts"


@pytest.fixture()
def client():
    previous_sender = api_module.notifier_sender
    api_module.reset_runtime_state_for_tests()
    api_module.notifier_sender = StubNotifierSender(enabled=True)
    try:
        yield TestClient(create_app())
    finally:
        api_module.notifier_sender = previous_sender
        api_module.reset_runtime_state_for_tests()


def _cron_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {api_module._settings.cron_secret}"}


def _service_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {api_module._settings.service_api_secret}"}


def _seed_application(
    application_id: str = "app-1",
    *,
    student_id: str = "stu-1",
    days_out: int = 3,
    name: str = "STEM Futures",
) -> ApplicationSnapshot:
    application = ApplicationSnapshot(
        application_id=application_id,
        student=StudentSnapshot(
            student_id=student_id,
            display_name=f"Student {student_id}",
            email=f"{student_id}@example.com",
        ),
        scholarship=ScholarshipSnapshot(
            scholarship_id=f"sch-{application_id}",
            name=name,
            award_amount=2500.0,
            deadline=datetime.now(timezone.utc).date() + timedelta(days=days_out),
        ),
        status="in_progress",
        essays_required=1,
        essays_complete=1,
        last_activity_at=datetime.now(timezone.utc),
    )
    api_module.data_source.upsert_application(application)
    return application


def _run_job(client: TestClient, job: str = "deadline-alerts") -> dict:
    response = client.post(f"{PREFIX}/internal/jobs/{job}", headers=_cron_headers())
    assert response.status_code == 200, response.text
    return response.json()


def _sent_link(action: str, index: int = 0) -> str:
    link = api_module.notifier_sender.sent[index].action_links[action]
    parsed = urlparse(link)
    return f"{parsed.path}?{parsed.query}"


def _only_alert(student_id: str = "stu-1"):
    alerts = api_module.alert_store.list_alerts_for_student(student_id)
    assert len(alerts) == 1
    return alerts[0]


def test_trigger_requires_cron_secret(client: TestClient) -> None:
    missing = client.post(f"{PREFIX}/internal/jobs/deadline-alerts")
    wrong = client.post(
        f"{PREFIX}/internal/jobs/deadline-alerts",
        headers={"Authorization": "Bearer not-the-secret"},
    )

    assert missing.status_code == 401
    assert wrong.status_code == 401
    assert api_module.job_run_repo.get_latest_run("deadline-alerts") is None


def test_trigger_unknown_job_is_404(client: TestClient) -> None:
    response = client.post(f"{PREFIX}/internal/jobs/payroll", headers=_cron_headers())
    assert response.status_code == 404


def test_list_job_schedules(client: TestClient) -> None:
    response = client.get(f"{PREFIX}/internal/jobs", headers=_cron_headers())

    assert response.status_code == 200
    schedules = {item["job"]: item["cron"] for item in response.json()["jobs"]}
    assert schedules == {
        "goal-completion": "0 2 * * *",
        "deadline-alerts": "0 8 * * *",
        "at-risk": "0 9 * * *",
        "recommendation-reminders": "0 10 * * *",
    }


def test_trigger_returns_camel_case_summary(client: TestClient) -> None:
    _seed_application()

    body = _run_job(client)

    assert body["success"] is True
    assert body["job"] == "deadline-alerts"
    assert body["trigger"] == "manual"
    assert body["scannedCount"] == 1
    assert body["createdCount"] == 1
    assert body["sentCount"] == 1
    assert body["failures"] == []
    assert body["runId"]

    scheduled = client.get(f"{PREFIX}/internal/jobs/deadline-alerts", headers=_cron_headers())
    assert scheduled.status_code == 200
    assert scheduled.json()["trigger"] == "schedule"
    assert scheduled.json()["createdCount"] == 0
    assert scheduled.json()["skippedCount"] == 1


def test_trigger_reports_partial_failures(client: TestClient) -> None:
    _seed_application("app-ok", student_id="stu-ok")
    _seed_application("app-bad", student_id="stu-fail")

    body = _run_job(client)

    assert body["success"] is True
    assert body["sentCount"] == 1
    assert body["failures"] == [
        {
            "entityId": "app-bad",
            "errorCode": "dispatch_failed",
            "errorMessage": "stub_delivery_failed: Stub sender forced failure for recipient",
            "alertId": api_module.alert_store.list_alerts_for_student("stu-fail")[0].alert_id,
        }
    ]


def test_trigger_scope_failure_returns_500(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    def _broken():
        raise ConnectionError("database unavailable")

    monkeypatch.setattr(api_module.data_source, "list_open_applications", _broken)

    response = client.post(f"{PREFIX}/internal/jobs/deadline-alerts", headers=_cron_headers())

    assert response.status_code == 500
    body = response.json()
    assert body["success"] is False
    assert body["job"] == "deadline-alerts"
    assert body["error"] == "scope_read_failed"
    assert body["runId"]


def test_latest_run_summary(client: TestClient) -> None:
    before = client.get(f"{PREFIX}/internal/jobs/at-risk/latest", headers=_cron_headers())
    assert before.status_code == 404

    _seed_application(days_out=1)
    body = _run_job(client, "at-risk")

    latest = client.get(f"{PREFIX}/internal/jobs/at-risk/latest", headers=_cron_headers())
    assert latest.status_code == 200
    summary = latest.json()
    assert summary["runId"] == body["runId"]
    assert summary["status"] == "completed"
    assert summary["createdCount"] == 1
    assert summary["failedCount"] == 0


def test_snooze_link_redirects_and_is_idempotent(client: TestClient) -> None:
    _seed_application()
    _run_job(client)
    link = _sent_link("snooze")

    first = client.get(link, follow_redirects=False)
    second = client.get(link, follow_redirects=False)

    assert first.status_code == 303
    location = urlparse(first.headers["location"])
    assert location.path == "/applications"
    assert parse_qs(location.query) == {"alert_action": ["snoozed"], "scholarship": ["STEM Futures"]}
    assert parse_qs(urlparse(second.headers["location"]).query)["alert_action"] == ["already_handled"]

    alert = _only_alert()
    assert alert.status == "snoozed"
    assert alert.snooze_until is not None


def test_dismiss_link_then_snooze_link_is_already_handled(client: TestClient) -> None:
    _seed_application()
    _run_job(client)

    dismissed = client.get(_sent_link("dismiss"), follow_redirects=False)
    snoozed = client.get(_sent_link("snooze"), follow_redirects=False)

    assert dismissed.status_code == 303
    assert parse_qs(urlparse(dismissed.headers["location"]).query)["alert_action"] == ["dismissed"]
    assert snoozed.status_code == 303
    assert parse_qs(urlparse(snoozed.headers["location"]).query)["alert_action"] == ["already_handled"]
    assert _only_alert().status == "dismissed"


def test_action_token_only_touches_its_own_alert(client: TestClient) -> None:
    _seed_application("app-a", days_out=3, name="Alpha Award")
    _seed_application("app-b", days_out=2, name="Beta Bursary")
    _run_job(client)
    sent = api_module.notifier_sender.sent
    index_a = next(index for index, item in enumerate(sent) if item.context["application_id"] == "app-a")

    response = client.get(_sent_link("dismiss", index_a), follow_redirects=False)

    assert response.status_code == 303
    statuses = {
        alert.application_id: alert.status for alert in api_module.alert_store.list_alerts_for_student("stu-1")
    }
    assert statuses == {"app-a": "dismissed", "app-b": "pending"}


def test_action_link_without_token_is_400(client: TestClient) -> None:
    response = client.get(f"{PREFIX}/actions/snooze", follow_redirects=False)

    assert response.status_code == 400
    assert response.json()["detail"]["category"] == "missing_token"


def test_expired_action_link_is_401(client: TestClient) -> None:
    _seed_application()
    _run_job(client)
    alert = _only_alert()
    token = api_module.action_codec.issue(
        alert.alert_id,
        "snooze",
        ttl_minutes=5,
        now=datetime.now(timezone.utc) - timedelta(hours=1),
    )

    response = client.get(f"{PREFIX}/actions/snooze", params={"token": token}, follow_redirects=False)

    assert response.status_code == 401
    assert response.json()["detail"]["category"] == "link_expired"
    assert _only_alert().status == "pending"


def test_tampered_or_mismatched_action_link_is_401(client: TestClient) -> None:
    _seed_application()
    _run_job(client)
    alert = _only_alert()
    token = api_module.action_codec.issue(alert.alert_id, "dismiss", ttl_minutes=60)
    tampered = token[:-1] + ("0" if token[-1] != "0" else "1")

    mismatched = client.get(f"{PREFIX}/actions/snooze", params={"token": token}, follow_redirects=False)
    invalid = client.get(f"{PREFIX}/actions/dismiss", params={"token": tampered}, follow_redirects=False)

    assert mismatched.status_code == 401
    assert mismatched.json()["detail"]["category"] == "link_invalid"
    assert "please sign in" in mismatched.json()["detail"]["message"]
    assert invalid.status_code == 401
    assert invalid.json()["detail"]["category"] == "link_invalid"
    assert "please sign in" in invalid.json()["detail"]["message"]
    assert _only_alert().status == "pending"


def test_action_link_for_missing_alert_is_404(client: TestClient) -> None:
    token = api_module.action_codec.issue("alrt_missing", "dismiss", ttl_minutes=60)

    response = client.get(f"{PREFIX}/actions/dismiss", params={"token": token}, follow_redirects=False)

    assert response.status_code == 404
    assert response.json()["detail"]["category"] == "alert_not_found"


def test_action_link_store_failure_returns_reference(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    _seed_application()
    _run_job(client)

    def _boom(*args, **kwargs):
        raise RuntimeError("database went away")

    monkeypatch.setattr(api_module.state_machine, "snooze", _boom)

    response = client.get(_sent_link("snooze"), follow_redirects=False)

    assert response.status_code == 500
    detail = response.json()["detail"]
    assert detail["category"] == "delivery_error"
    assert detail["reference"]
    assert "database" not in detail["message"]


def test_upload_link_redirects_to_recommendation_upload(client: TestClient) -> None:
    application = _seed_application(days_out=5)
    api_module.data_source.upsert_recommendation(
        RecommendationRequestSnapshot(
            recommendation_id="rec-42",
            application=application,
            recommender_name="Prof. Lovelace",
            recommender_email="lovelace@example.edu",
            status="requested",
        )
    )
    body = _run_job(client, "recommendation-reminders")
    assert body["sentCount"] == 1

    response = client.get(_sent_link("upload"), follow_redirects=False)

    assert response.status_code == 303
    assert urlparse(response.headers["location"]).path == "/upload-rec/rec-42"


def test_student_active_alerts_require_service_secret(client: TestClient) -> None:
    response = client.get(f"{PREFIX}/students/stu-1/active", headers=_cron_headers())
    assert response.status_code == 401


def test_student_active_alerts_and_transitions(client: TestClient) -> None:
    _seed_application()
    _run_job(client)
    alert = _only_alert()

    listing = client.get(f"{PREFIX}/students/stu-1/active", headers=_service_headers())
    assert listing.status_code == 200
    items = listing.json()["alerts"]
    assert [item["alert_id"] for item in items] == [alert.alert_id]
    assert items[0]["scholarship_name"] == "STEM Futures"
    assert items[0]["effectively_snoozed"] is False

    forbidden = client.post(
        f"{PREFIX}/students/stu-2/alerts/{alert.alert_id}/snooze",
        headers=_service_headers(),
    )
    assert forbidden.status_code == 403

    snoozed = client.post(f"{PREFIX}/students/stu-1/alerts/{alert.alert_id}/snooze", headers=_service_headers())
    assert snoozed.status_code == 200
    assert snoozed.json()["applied"] is True
    assert snoozed.json()["alert"]["status"] == "snoozed"

    hidden = client.get(f"{PREFIX}/students/stu-1/active", headers=_service_headers())
    assert hidden.json()["alerts"] == []
    shown = client.get(
        f"{PREFIX}/students/stu-1/active",
        params={"include_snoozed": "true"},
        headers=_service_headers(),
    )
    assert shown.json()["alerts"][0]["effectively_snoozed"] is True

    dismissed = client.post(f"{PREFIX}/students/stu-1/alerts/{alert.alert_id}/dismiss", headers=_service_headers())
    assert dismissed.status_code == 200
    assert dismissed.json()["alert"]["snooze_until"] is None

    conflict = client.post(f"{PREFIX}/students/stu-1/alerts/{alert.alert_id}/snooze", headers=_service_headers())
    assert conflict.status_code == 409

    missing = client.post(f"{PREFIX}/students/stu-1/alerts/alrt_missing/dismiss", headers=_service_headers())
    assert missing.status_code == 404
