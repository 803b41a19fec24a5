from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Callable, Iterable
from urllib.parse import urlencode

from .action_tokens import ActionTokenCodec
from .alert_lifecycle import AlertStateMachine
from .alert_store import AlertRecord, DuplicateActiveAlertError, scope_key_for
from .at_risk import at_risk_message, days_until_deadline, evaluate_at_risk, recovery_steps
from .config import Settings
from .job_runs import JobRunRepository, with_run_id
from .models import (
    AlertAction,
    AlertKind,
    EntityFailure,
    EntityFailureCode,
    JobName,
    JobRunResult,
    JobTrigger,
    deadline_kind,
)
from .notifier import AlertNotification, NotifierSender, mask_contact_target
from .scholarship_data import (
    ApplicationSnapshot,
    FundingGoalSnapshot,
    RecommendationRequestSnapshot,
    ScholarshipDataSource,
)

logger = logging.getLogger(__name__)

SCOPE_READ_FAILED = "scope_read_failed"
MAX_RECOMMENDATION_REMINDERS = 2


@dataclass(frozen=True)
class JobSchedule:
    job: JobName
    cron: str
    description: str


JOB_SCHEDULES: dict[JobName, JobSchedule] = {
    "goal-completion": JobSchedule(
        "goal-completion", "0 2 * * *", "Mark funding goals reached and congratulate the student"
    ),
    "deadline-alerts": JobSchedule(
        "deadline-alerts", "0 8 * * *", "Warn students about approaching scholarship deadlines"
    ),
    "at-risk": JobSchedule(
        "at-risk", "0 9 * * *", "Flag open applications unlikely to be finished in time"
    ),
    "recommendation-reminders": JobSchedule(
        "recommendation-reminders", "0 10 * * *", "Nudge recommenders whose letters are still outstanding"
    ),
}


@dataclass(frozen=True)
class DetectionCandidate:
    """One alert a job wants to exist (and be delivered) for a scope entity."""

    student_id: str
    application_id: str | None
    kind: AlertKind
    recipient_name: str
    recipient_email: str
    template: str
    subject: str
    cause: str = ""
    context: dict[str, object] = field(default_factory=dict)
    relevant_until: datetime | None = None


@dataclass(frozen=True)
class DetectionJob:
    name: JobName
    load_scope: Callable[[datetime], Iterable[Any]]
    evaluate: Callable[[Any, datetime], Iterable[DetectionCandidate]]
    entity_id: Callable[[Any], str]
    actions: tuple[AlertAction, ...] = ("snooze", "dismiss")
    on_sent: Callable[[Any, AlertRecord, datetime], None] | None = None


@dataclass
class _RunCounters:
    scanned: int = 0
    created: int = 0
    sent: int = 0
    skipped: int = 0
    failures: list[EntityFailure] = field(default_factory=list)

    def fail(
        self,
        entity_id: str,
        code: EntityFailureCode,
        message: str,
        alert_id: str | None = None,
    ) -> None:
        self.failures.append(
            EntityFailure(entity_id=entity_id, error_code=code, error_message=message, alert_id=alert_id)
        )


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def end_of_day(value: date) -> datetime:
    return datetime.combine(value + timedelta(days=1), time.min, tzinfo=timezone.utc)


class DetectionPipeline:
    def __init__(
        self,
        *,
        state_machine: AlertStateMachine,
        codec: ActionTokenCodec,
        sender: NotifierSender,
        action_url_base: str,
        token_ttl_minutes: int,
        dispatch_timeout_seconds: float,
        ledger: JobRunRepository | None = None,
    ) -> None:
        self._state_machine = state_machine
        self._codec = codec
        self._sender = sender
        self._action_url_base = action_url_base.rstrip("/")
        self._token_ttl_minutes = token_ttl_minutes
        self._dispatch_timeout_seconds = dispatch_timeout_seconds
        self._ledger = ledger

    def run(
        self,
        job: DetectionJob,
        *,
        trigger: JobTrigger = "schedule",
        now: datetime | None = None,
    ) -> JobRunResult:
        run_at = now or _now_utc()
        logger.info("alert job started job=%s trigger=%s", job.name, trigger)

        try:
            entities = list(job.load_scope(run_at))
        except Exception:
            logger.exception("alert job scope read failed job=%s", job.name)
            return self._finish(
                JobRunResult(job=job.name, trigger=trigger, run_at=run_at, success=False, error=SCOPE_READ_FAILED)
            )

        counters = _RunCounters()
        for entity in entities:
            counters.scanned += 1
            self._process_entity(job, entity, run_at, counters)

        result = JobRunResult(
            job=job.name,
            trigger=trigger,
            run_at=run_at,
            success=True,
            scanned_count=counters.scanned,
            created_count=counters.created,
            sent_count=counters.sent,
            skipped_count=counters.skipped,
            failures=counters.failures,
        )
        logger.info(
            "alert job completed job=%s scanned=%d created=%d sent=%d skipped=%d failed=%d",
            job.name,
            counters.scanned,
            counters.created,
            counters.sent,
            counters.skipped,
            len(counters.failures),
        )
        return self._finish(result)

    def _finish(self, result: JobRunResult) -> JobRunResult:
        if self._ledger is None:
            return result
        try:
            record = self._ledger.record_run(result, finished_at=_now_utc())
        except Exception:
            # The scan already happened; report it without a run id.
            logger.exception("alert job run could not be recorded job=%s trigger=%s", result.job, result.trigger)
            return result
        return with_run_id(result, record)

    def _process_entity(self, job: DetectionJob, entity: Any, now: datetime, counters: _RunCounters) -> None:
        try:
            entity_id = job.entity_id(entity)
            candidates = list(job.evaluate(entity, now))
        except Exception as exc:
            entity_id = _safe_entity_id(job, entity)
            logger.warning("alert job skipped malformed record job=%s entity_id=%s error=%s", job.name, entity_id, exc)
            counters.fail(entity_id, "malformed_record", str(exc) or exc.__class__.__name__)
            return

        for candidate in candidates:
            try:
                self._process_candidate(job, entity, entity_id, candidate, now, counters)
            except Exception as exc:
                logger.exception(
                    "alert job could not process candidate job=%s entity_id=%s kind=%s",
                    job.name,
                    entity_id,
                    candidate.kind,
                )
                counters.fail(entity_id, "malformed_record", str(exc) or exc.__class__.__name__)

    def _process_candidate(
        self,
        job: DetectionJob,
        entity: Any,
        entity_id: str,
        candidate: DetectionCandidate,
        now: datetime,
        counters: _RunCounters,
    ) -> None:
        scope_key = scope_key_for(
            kind=candidate.kind,
            student_id=candidate.student_id,
            application_id=candidate.application_id,
        )
        try:
            existing = self._state_machine.store.find_latest_alert(
                scope_key=scope_key,
                kind=candidate.kind,
                cause=candidate.cause,
            )
            if existing is not None and (existing.status == "dismissed" or existing.last_sent_at is not None):
                counters.skipped += 1
                return
            if existing is not None:
                alert = existing
            else:
                alert = self._state_machine.create(
                    student_id=candidate.student_id,
                    application_id=candidate.application_id,
                    kind=candidate.kind,
                    cause=candidate.cause,
                    now=now,
                )
                counters.created += 1
        except DuplicateActiveAlertError:
            # Another run created it first.
            counters.skipped += 1
            return
        except Exception as exc:
            logger.warning(
                "alert store error job=%s entity_id=%s kind=%s error=%s",
                job.name,
                entity_id,
                candidate.kind,
                exc,
            )
            counters.fail(entity_id, "alert_store_error", str(exc) or exc.__class__.__name__)
            return

        notification = self._build_notification(job, alert, candidate, now)
        code, message, sent_at = self._dispatch(notification)
        if code is not None:
            logger.warning(
                "alert dispatch failed job=%s entity_id=%s alert_id=%s error_code=%s recipient=%s",
                job.name,
                entity_id,
                alert.alert_id,
                code,
                mask_contact_target(candidate.recipient_email),
            )
            counters.fail(entity_id, code, message, alert_id=alert.alert_id)
            return
        counters.sent += 1

        # on_sent runs before last_sent_at is written; a failed follow-up leaves the alert unsent.
        try:
            if job.on_sent is not None:
                job.on_sent(entity, alert, sent_at)
            self._state_machine.mark_sent(alert.alert_id, sent_at=sent_at)
        except Exception as exc:
            logger.warning(
                "alert follow-up failed job=%s entity_id=%s alert_id=%s error=%s",
                job.name,
                entity_id,
                alert.alert_id,
                exc,
            )
            counters.fail(entity_id, "follow_up_failed", str(exc) or exc.__class__.__name__, alert_id=alert.alert_id)

    def _build_notification(
        self,
        job: DetectionJob,
        alert: AlertRecord,
        candidate: DetectionCandidate,
        now: datetime,
    ) -> AlertNotification:
        ttl_minutes = self._token_ttl_minutes
        if candidate.relevant_until is not None:
            remaining = int((candidate.relevant_until - now).total_seconds() // 60)
            ttl_minutes = max(1, min(ttl_minutes, remaining))

        links: dict[str, str] = {}
        for action in job.actions:
            token = self._codec.issue(alert.alert_id, action, ttl_minutes=ttl_minutes, now=now)
            links[action] = f"{self._action_url_base}/{action}?{urlencode({'token': token})}"

        return AlertNotification(
            alert_id=alert.alert_id,
            kind=alert.kind,
            template=candidate.template,
            recipient_name=candidate.recipient_name,
            recipient_email=candidate.recipient_email,
            subject=candidate.subject,
            context=dict(candidate.context),
            action_links=links,
        )

    def _dispatch(self, notification: AlertNotification) -> tuple[EntityFailureCode | None, str, datetime]:
        outcome: dict[str, Any] = {}

        def _send() -> None:
            try:
                outcome["result"] = self._sender.send_alert(notification)
            except Exception as exc:
                outcome["error"] = exc

        # Daemon worker: a hung send must not hold up interpreter shutdown.
        worker = threading.Thread(
            target=_send,
            name=f"alert-dispatch-{notification.alert_id}",
            daemon=True,
        )
        worker.start()
        worker.join(self._dispatch_timeout_seconds)
        if worker.is_alive():
            logger.warning(
                "alert dispatch still running after timeout alert_id=%s thread=%s timeout_seconds=%s",
                notification.alert_id,
                worker.name,
                self._dispatch_timeout_seconds,
            )
            return (
                "dispatch_timeout",
                f"delivery did not finish within {self._dispatch_timeout_seconds:g}s",
                _now_utc(),
            )

        if "error" in outcome:
            exc = outcome["error"]
            return "dispatch_failed", str(exc) or exc.__class__.__name__, _now_utc()

        result = outcome["result"]
        if result.status != "sent":
            message = result.error_message or "delivery failed"
            if result.error_code:
                message = f"{result.error_code}: {message}"
            return "dispatch_failed", message, result.attempted_at
        return None, "", result.attempted_at


def _safe_entity_id(job: DetectionJob, entity: Any) -> str:
    try:
        return job.entity_id(entity)
    except Exception:
        return repr(entity)[:128]


def _application_context(application: ApplicationSnapshot, days: int) -> dict[str, object]:
    return {
        "student_name": application.student.display_name,
        "application_id": application.application_id,
        "scholarship_id": application.scholarship.scholarship_id,
        "scholarship_name": application.scholarship.name,
        "award_amount": application.scholarship.award_amount,
        "deadline": application.scholarship.deadline.isoformat(),
        "days_until_deadline": days,
    }


def build_deadline_job(*, data_source: ScholarshipDataSource, settings: Settings) -> DetectionJob:
    thresholds = settings.effective_deadline_thresholds()

    def evaluate(application: ApplicationSnapshot, now: datetime) -> list[DetectionCandidate]:
        days = days_until_deadline(application.scholarship.deadline, now)
        crossed = [threshold for threshold in thresholds if 0 <= days <= threshold]
        if not crossed:
            return []
        threshold = min(crossed)
        context = _application_context(application, days)
        context["threshold_days"] = threshold
        return [
            DetectionCandidate(
                student_id=application.student.student_id,
                application_id=application.application_id,
                kind=deadline_kind(threshold),
                recipient_name=application.student.display_name,
                recipient_email=application.student.email,
                template="deadline-reminder",
                subject=_deadline_subject(application.scholarship.name, days),
                context=context,
                relevant_until=end_of_day(application.scholarship.deadline),
            )
        ]

    return DetectionJob(
        name="deadline-alerts",
        load_scope=lambda now: data_source.list_open_applications(),
        evaluate=evaluate,
        entity_id=lambda application: application.application_id,
        actions=("snooze", "dismiss"),
    )


def _deadline_subject(scholarship_name: str, days: int) -> str:
    if days == 0:
        return f"{scholarship_name} is due today"
    if days == 1:
        return f"{scholarship_name} is due tomorrow"
    return f"{scholarship_name} is due in {days} days"


def build_recommendation_job(*, data_source: ScholarshipDataSource, settings: Settings) -> DetectionJob:
    windows = tuple(value for value in settings.recommendation_reminder_days if value >= 0)

    def evaluate(request: RecommendationRequestSnapshot, now: datetime) -> list[DetectionCandidate]:
        if request.status == "received" or request.received_at is not None:
            return []
        if request.reminder_count >= MAX_RECOMMENDATION_REMINDERS:
            return []
        application = request.application
        days = days_until_deadline(application.scholarship.deadline, now)
        crossed = [window for window in windows if 0 <= days <= window]
        if not crossed:
            return []
        window = min(crossed)
        context = _application_context(application, days)
        context.update(
            {
                "recommendation_id": request.recommendation_id,
                "recommender_name": request.recommender_name,
                "reminder_number": request.reminder_count + 1,
            }
        )
        return [
            DetectionCandidate(
                student_id=application.student.student_id,
                application_id=application.application_id,
                kind="recommendation-reminder",
                cause=f"{request.recommendation_id}:{window}d",
                recipient_name=request.recommender_name,
                recipient_email=request.recommender_email,
                template="recommendation-reminder",
                subject=(
                    f"Reminder: recommendation for {application.student.display_name} "
                    f"due {application.scholarship.deadline.isoformat()}"
                ),
                context=context,
                relevant_until=end_of_day(application.scholarship.deadline),
            )
        ]

    def on_sent(request: RecommendationRequestSnapshot, alert: AlertRecord, sent_at: datetime) -> None:
        data_source.mark_recommendation_reminded(request.recommendation_id, reminded_at=sent_at)

    return DetectionJob(
        name="recommendation-reminders",
        load_scope=lambda now: data_source.list_outstanding_recommendations(),
        evaluate=evaluate,
        entity_id=lambda request: request.recommendation_id,
        actions=("upload",),
        on_sent=on_sent,
    )


def build_goal_completion_job(*, data_source: ScholarshipDataSource, settings: Settings) -> DetectionJob:
    _ = settings

    def evaluate(goal: FundingGoalSnapshot, now: datetime) -> list[DetectionCandidate]:
        if goal.status != "in_progress":
            return []
        if goal.target_amount <= 0 or goal.secured_amount < goal.target_amount:
            return []
        return [
            DetectionCandidate(
                student_id=goal.student.student_id,
                application_id=None,
                kind="goal-completion",
                cause=f"{goal.goal_id}:r{goal.revision}",
                recipient_name=goal.student.display_name,
                recipient_email=goal.student.email,
                template="goal-completed",
                subject="You reached your scholarship funding goal",
                context={
                    "student_name": goal.student.display_name,
                    "goal_id": goal.goal_id,
                    "target_amount": goal.target_amount,
                    "secured_amount": goal.secured_amount,
                    "target_date": goal.target_date.isoformat() if goal.target_date else None,
                },
            )
        ]

    def on_sent(goal: FundingGoalSnapshot, alert: AlertRecord, sent_at: datetime) -> None:
        data_source.mark_goal_completed(goal.goal_id)

    return DetectionJob(
        name="goal-completion",
        load_scope=lambda now: data_source.list_in_progress_goals(),
        evaluate=evaluate,
        entity_id=lambda goal: goal.goal_id,
        actions=("dismiss",),
        on_sent=on_sent,
    )


def build_at_risk_job(*, data_source: ScholarshipDataSource, settings: Settings) -> DetectionJob:
    def evaluate(application: ApplicationSnapshot, now: datetime) -> list[DetectionCandidate]:
        finding = evaluate_at_risk(
            application,
            now,
            inactivity_days=settings.at_risk_inactivity_days,
            inactivity_window_days=settings.at_risk_inactivity_window_days,
        )
        if finding is None:
            return []
        context = _application_context(application, finding.days_until_deadline)
        context.update(
            {
                "reason": finding.reason,
                "severity": finding.severity,
                "progress_percent": round(finding.progress_percent),
                "message": at_risk_message(finding),
                "recovery_steps": recovery_steps(application),
            }
        )
        return [
            DetectionCandidate(
                student_id=application.student.student_id,
                application_id=application.application_id,
                kind="at-risk",
                cause=finding.reason,
                recipient_name=application.student.display_name,
                recipient_email=application.student.email,
                template="application-at-risk",
                subject=f"{application.scholarship.name} needs attention",
                context=context,
                relevant_until=end_of_day(application.scholarship.deadline),
            )
        ]

    return DetectionJob(
        name="at-risk",
        load_scope=lambda now: data_source.list_open_applications(),
        evaluate=evaluate,
        entity_id=lambda application: application.application_id,
        actions=("snooze", "dismiss"),
    )


def build_jobs(*, data_source: ScholarshipDataSource, settings: Settings) -> dict[JobName, DetectionJob]:
    return {
        "deadline-alerts": build_deadline_job(data_source=data_source, settings=settings),
        "recommendation-reminders": build_recommendation_job(data_source=data_source, settings=settings),
        "goal-completion": build_goal_completion_job(data_source=data_source, settings=settings),
        "at-risk": build_at_risk_job(data_source=data_source, settings=settings),
    }
