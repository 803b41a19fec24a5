from __future__ import annotations

import logging
import secrets
from urllib.parse import urlencode

from fastapi import APIRouter, HTTPException, Request, status
from fastapi.responses import JSONResponse, RedirectResponse

from .action_tokens import ActionTokenCodec, ActionTokenError, ActionTokenExpired, ActionTokenMismatch
from .alert_jobs import JOB_SCHEDULES, DetectionPipeline, build_jobs
from .alert_lifecycle import (
    ActiveAlertView,
    AlertAlreadyDismissedError,
    AlertForbiddenError,
    AlertStateMachine,
)
from .alert_store import AlertNotFoundError, AlertRecord, AlertStore, create_alert_store
from .config import Settings, get_settings
from .job_runs import JobRunRepository, create_job_run_repository
from .models import (
    ActionLinkError,
    ActionOutcome,
    ActiveAlertItem,
    ActiveAlertListResponse,
    AlertSummary,
    AlertTransitionResponse,
    JobFailureResponse,
    JobName,
    JobRunResult,
    JobRunSummary,
    JobScheduleItem,
    JobScheduleListResponse,
)
from .notifier import HttpNotifierSender, NotifierSender, StubNotifierSender
from .scholarship_data import InMemoryScholarshipDataSource

logger = logging.getLogger(__name__)

_settings = get_settings()
router = APIRouter(prefix=f"{_settings.api_prefix}/alerts", tags=["alerts"])


def _create_notifier(settings: Settings) -> NotifierSender:
    if settings.notifier_sender_type == "http":
        return HttpNotifierSender(
            base_url=settings.notifier_api_base_url,
            api_key=settings.notifier_api_key,
            timeout_seconds=settings.notifier_timeout_seconds,
        )
    return StubNotifierSender(enabled=settings.notifier_enabled)


data_source = InMemoryScholarshipDataSource()
alert_store: AlertStore = create_alert_store(
    backend=_settings.alert_store_backend,
    database_url=_settings.database_url,
)
job_run_repo: JobRunRepository = create_job_run_repository(
    backend=_settings.job_run_store_backend,
    database_url=_settings.database_url,
)
state_machine = AlertStateMachine(store=alert_store, data_source=data_source)
action_codec = ActionTokenCodec(
    secret=_settings.action_token_secret,
    max_ttl_minutes=_settings.action_token_max_ttl_minutes,
)
notifier_sender: NotifierSender = _create_notifier(_settings)


def reset_runtime_state_for_tests() -> None:
    alert_store.reset()
    job_run_repo.reset()
    data_source.reset()


def _pipeline() -> DetectionPipeline:
    return DetectionPipeline(
        state_machine=state_machine,
        codec=action_codec,
        sender=notifier_sender,
        action_url_base=f"{_settings.public_api_base_url.rstrip('/')}{router.prefix}/actions",
        token_ttl_minutes=_settings.action_token_ttl_minutes,
        dispatch_timeout_seconds=_settings.dispatch_timeout_seconds,
        ledger=job_run_repo,
    )


def _bearer_token(request: Request) -> str:
    return request.headers.get("Authorization", "").removeprefix("Bearer ").strip()


def _require_secret(request: Request, expected: str, *, label: str) -> None:
    token = _bearer_token(request)
    if not token or not secrets.compare_digest(token.encode("utf-8"), expected.encode("utf-8")):
        logger.warning("%s rejected path=%s", label, request.url.path)
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "unauthorized")


def _require_job(job: str) -> JobName:
    if job not in JOB_SCHEDULES:
        raise HTTPException(status.HTTP_404_NOT_FOUND, f"unknown job: {job}")
    return job  # type: ignore[return-value]


# ---------------------------------------------------------------------------
# Scheduler / trigger boundary
# ---------------------------------------------------------------------------


@router.get("/internal/jobs", response_model=JobScheduleListResponse)
def list_job_schedules(request: Request) -> JobScheduleListResponse:
    _require_secret(request, _settings.cron_secret, label="alert job listing")
    return JobScheduleListResponse(
        jobs=[
            JobScheduleItem(job=schedule.job, cron=schedule.cron, description=schedule.description)
            for schedule in JOB_SCHEDULES.values()
        ]
    )


@router.api_route(
    "/internal/jobs/{job}",
    methods=["GET", "POST"],
    response_model=JobRunResult,
    responses={500: {"model": JobFailureResponse}},
)
def trigger_job(job: str, request: Request):
    _require_secret(request, _settings.cron_secret, label="alert job trigger")
    job_name = _require_job(job)
    trigger = "manual" if request.method == "POST" else "schedule"
    detection_job = build_jobs(data_source=data_source, settings=_settings)[job_name]

    try:
        result = _pipeline().run(detection_job, trigger=trigger)
    except Exception:
        logger.exception("alert job crashed job=%s trigger=%s", job_name, trigger)
        failure = JobFailureResponse(job=job_name, error="job_failed")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=failure.model_dump(mode="json", by_alias=True),
        )

    if not result.success:
        failure = JobFailureResponse(job=job_name, error=result.error or "job_failed", run_id=result.run_id)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=failure.model_dump(mode="json", by_alias=True),
        )
    return result


@router.get("/internal/jobs/{job}/latest", response_model=JobRunSummary)
def get_latest_job_run(job: str, request: Request) -> JobRunSummary:
    _require_secret(request, _settings.cron_secret, label="alert job status")
    job_name = _require_job(job)
    record = job_run_repo.get_latest_run(job_name)
    if record is None:
        raise HTTPException(status.HTTP_404_NOT_FOUND, f"no runs recorded for job: {job_name}")
    return JobRunSummary(
        run_id=record.run_id,
        job=record.job,
        trigger=record.trigger,
        status=record.status,
        run_at=record.run_at,
        finished_at=record.finished_at,
        scanned_count=record.scanned_count,
        created_count=record.created_count,
        sent_count=record.sent_count,
        skipped_count=record.skipped_count,
        failed_count=record.failed_count,
        error_message=record.error_message,
    )


# ---------------------------------------------------------------------------
# Email action links
# ---------------------------------------------------------------------------


def _link_error(status_code: int, category: str, message: str, reference: str | None = None) -> HTTPException:
    detail = ActionLinkError(category=category, message=message, reference=reference)  # type: ignore[arg-type]
    return HTTPException(status_code, detail.model_dump())


def _delivery_error(exc_context: str) -> HTTPException:
    reference = secrets.token_hex(4)
    logger.exception("alert action failed reference=%s context=%s", reference, exc_context)
    return _link_error(
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        "delivery_error",
        "We could not update this alert right now. Please try again from your dashboard.",
        reference,
    )


_INVALID_LINK_MESSAGE = "This link is not valid, please sign in to manage your alerts."


def _verify_link(token: str | None, action: str):
    if not token:
        raise _link_error(status.HTTP_400_BAD_REQUEST, "missing_token", "This link is missing its token.")
    try:
        return action_codec.verify(token, expected_action=action)  # type: ignore[arg-type]
    except ActionTokenExpired as exc:
        logger.warning("alert action link expired action=%s", action)
        raise _link_error(
            status.HTTP_401_UNAUTHORIZED,
            "link_expired",
            "This link has expired, please sign in to manage your alerts.",
        ) from exc
    except ActionTokenMismatch as exc:
        logger.warning("alert action link used for wrong action action=%s", action)
        raise _link_error(status.HTTP_401_UNAUTHORIZED, "link_invalid", _INVALID_LINK_MESSAGE) from exc
    except ActionTokenError as exc:
        logger.warning("alert action link rejected action=%s", action)
        raise _link_error(status.HTTP_401_UNAUTHORIZED, "link_invalid", _INVALID_LINK_MESSAGE) from exc


def _load_alert(alert_id: str) -> AlertRecord:
    try:
        alert = alert_store.get_alert(alert_id)
    except Exception as exc:
        raise _delivery_error(f"load alert_id={alert_id}") from exc
    if alert is None:
        raise _link_error(status.HTTP_404_NOT_FOUND, "alert_not_found", "This alert no longer exists.")
    return alert


def _scholarship_name(alert: AlertRecord) -> str | None:
    if not alert.application_id:
        return None
    application = data_source.get_application(alert.application_id)
    return application.scholarship.name if application is not None else None


def _redirect_to_applications(outcome: ActionOutcome, alert: AlertRecord) -> RedirectResponse:
    params = {"alert_action": outcome}
    scholarship_name = _scholarship_name(alert)
    if scholarship_name:
        params["scholarship"] = scholarship_name
    url = f"{_settings.app_base_url.rstrip('/')}/applications?{urlencode(params)}"
    return RedirectResponse(url, status_code=status.HTTP_303_SEE_OTHER)


@router.get("/actions/snooze")
def snooze_from_link(token: str | None = None) -> RedirectResponse:
    payload = _verify_link(token, "snooze")
    alert = _load_alert(payload.alert_id)
    try:
        transition = state_machine.snooze(alert.alert_id, requester_student_id=alert.student_id)
        outcome: ActionOutcome = "snoozed" if transition.applied else "already_handled"
    except AlertAlreadyDismissedError:
        outcome = "already_handled"
    except AlertNotFoundError as exc:
        raise _link_error(status.HTTP_404_NOT_FOUND, "alert_not_found", "This alert no longer exists.") from exc
    except Exception as exc:
        raise _delivery_error(f"snooze alert_id={alert.alert_id}") from exc
    return _redirect_to_applications(outcome, alert)


@router.get("/actions/dismiss")
def dismiss_from_link(token: str | None = None) -> RedirectResponse:
    payload = _verify_link(token, "dismiss")
    alert = _load_alert(payload.alert_id)
    try:
        transition = state_machine.dismiss(alert.alert_id, requester_student_id=alert.student_id)
    except AlertNotFoundError as exc:
        raise _link_error(status.HTTP_404_NOT_FOUND, "alert_not_found", "This alert no longer exists.") from exc
    except Exception as exc:
        raise _delivery_error(f"dismiss alert_id={alert.alert_id}") from exc
    outcome: ActionOutcome = "dismissed" if transition.applied else "already_handled"
    return _redirect_to_applications(outcome, alert)


@router.get("/actions/upload")
def upload_from_link(token: str | None = None) -> RedirectResponse:
    payload = _verify_link(token, "upload")
    alert = _load_alert(payload.alert_id)
    if alert.kind != "recommendation-reminder" or ":" not in alert.cause:
        raise _link_error(status.HTTP_404_NOT_FOUND, "alert_not_found", "This alert no longer exists.")
    recommendation_id = alert.cause.rsplit(":", 1)[0]
    url = f"{_settings.app_base_url.rstrip('/')}/upload-rec/{recommendation_id}"
    return RedirectResponse(url, status_code=status.HTTP_303_SEE_OTHER)


# ---------------------------------------------------------------------------
# Alert query contract for the web UI backend
# ---------------------------------------------------------------------------


def _summary(alert: AlertRecord) -> AlertSummary:
    return AlertSummary(
        alert_id=alert.alert_id,
        kind=alert.kind,
        status=alert.status,
        cause=alert.cause,
        student_id=alert.student_id,
        application_id=alert.application_id,
        created_at=alert.created_at,
        last_sent_at=alert.last_sent_at,
        snooze_until=alert.snooze_until,
    )


def _active_item(view: ActiveAlertView) -> ActiveAlertItem:
    return ActiveAlertItem(
        **_summary(view.alert).model_dump(),
        scholarship_id=view.scholarship_id,
        scholarship_name=view.scholarship_name,
        award_amount=view.award_amount,
        deadline=view.deadline,
        effectively_snoozed=view.effectively_snoozed,
    )


@router.get("/students/{student_id}/active", response_model=ActiveAlertListResponse)
def list_active_alerts(student_id: str, request: Request, include_snoozed: bool = False) -> ActiveAlertListResponse:
    _require_secret(request, _settings.service_api_secret, label="alert query")
    views = state_machine.list_active(student_id, include_snoozed=include_snoozed)
    return ActiveAlertListResponse(
        student_id=student_id,
        include_snoozed=include_snoozed,
        alerts=[_active_item(view) for view in views],
    )


@router.post("/students/{student_id}/alerts/{alert_id}/snooze", response_model=AlertTransitionResponse)
def snooze_alert(student_id: str, alert_id: str, request: Request) -> AlertTransitionResponse:
    _require_secret(request, _settings.service_api_secret, label="alert snooze")
    try:
        transition = state_machine.snooze(alert_id, requester_student_id=student_id)
    except AlertNotFoundError as exc:
        raise HTTPException(status.HTTP_404_NOT_FOUND, f"alert not found: {alert_id}") from exc
    except AlertForbiddenError as exc:
        raise HTTPException(status.HTTP_403_FORBIDDEN, "alert belongs to another student") from exc
    except AlertAlreadyDismissedError as exc:
        raise HTTPException(status.HTTP_409_CONFLICT, "alert already dismissed") from exc
    return AlertTransitionResponse(alert=_summary(transition.alert), applied=transition.applied)


@router.post("/students/{student_id}/alerts/{alert_id}/dismiss", response_model=AlertTransitionResponse)
def dismiss_alert(student_id: str, alert_id: str, request: Request) -> AlertTransitionResponse:
    _require_secret(request, _settings.service_api_secret, label="alert dismiss")
    try:
        transition = state_machine.dismiss(alert_id, requester_student_id=student_id)
    except AlertNotFoundError as exc:
        raise HTTPException(status.HTTP_404_NOT_FOUND, f"alert not found: {alert_id}") from exc
    except AlertForbiddenError as exc:
        raise HTTPException(status.HTTP_403_FORBIDDEN, "alert belongs to another student") from exc
    return AlertTransitionResponse(alert=_summary(transition.alert), applied=transition.applied)
