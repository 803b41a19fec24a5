from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import date, datetime, timedelta, timezone

from .alert_store import (
    AlertNotFoundError,
    AlertRecord,
    AlertStore,
)
from .models import AlertKind
from .scholarship_data import ScholarshipDataSource

logger = logging.getLogger(__name__)

SNOOZE_DURATION = timedelta(hours=24)


class AlertForbiddenError(PermissionError):
    """Raised when a student acts on an alert that belongs to someone else."""


class AlertAlreadyDismissedError(RuntimeError):
    """Raised when a dismissed alert is asked to snooze."""


@dataclass(frozen=True)
class AlertTransition:
    alert: AlertRecord
    applied: bool


@dataclass(frozen=True)
class ActiveAlertView:
    alert: AlertRecord
    effectively_snoozed: bool
    scholarship_id: str | None = None
    scholarship_name: str | None = None
    award_amount: float | None = None
    deadline: date | None = None


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def is_effectively_snoozed(alert: AlertRecord, now: datetime) -> bool:
    """A snoozed alert whose window has passed reads as pending again."""
    return alert.status == "snoozed" and alert.snooze_until is not None and alert.snooze_until > now


class AlertStateMachine:
    def __init__(self, *, store: AlertStore, data_source: ScholarshipDataSource | None = None) -> None:
        self._store = store
        self._data_source = data_source

    @property
    def store(self) -> AlertStore:
        return self._store

    def create(
        self,
        *,
        student_id: str,
        application_id: str | None,
        kind: AlertKind,
        cause: str = "",
        now: datetime | None = None,
    ) -> AlertRecord:
        alert = self._store.create_alert(
            student_id=student_id,
            application_id=application_id,
            kind=kind,
            cause=cause,
            now=now,
        )
        logger.info(
            "alert created alert_id=%s kind=%s student_id=%s application_id=%s",
            alert.alert_id,
            alert.kind,
            alert.student_id,
            alert.application_id,
        )
        return alert

    def _require_owner(self, alert_id: str, requester_student_id: str) -> None:
        alert = self._store.get_alert(alert_id)
        if alert is None:
            raise AlertNotFoundError(alert_id)
        if alert.student_id != requester_student_id:
            raise AlertForbiddenError(alert_id)

    def snooze(
        self,
        alert_id: str,
        *,
        requester_student_id: str,
        now: datetime | None = None,
    ) -> AlertTransition:
        reference_now = now or _now_utc()

        def _apply(current: AlertRecord) -> AlertRecord | None:
            if current.student_id != requester_student_id:
                raise AlertForbiddenError(alert_id)
            if current.status == "dismissed":
                raise AlertAlreadyDismissedError(alert_id)
            if is_effectively_snoozed(current, reference_now):
                return None
            return replace(current, status="snoozed", snooze_until=reference_now + SNOOZE_DURATION)

        self._require_owner(alert_id, requester_student_id)
        alert, applied = self._store.transition(alert_id, _apply)
        if applied:
            logger.info("alert snoozed alert_id=%s until=%s", alert_id, alert.snooze_until.isoformat())
        return AlertTransition(alert=alert, applied=applied)

    def dismiss(self, alert_id: str, *, requester_student_id: str) -> AlertTransition:
        def _apply(current: AlertRecord) -> AlertRecord | None:
            if current.student_id != requester_student_id:
                raise AlertForbiddenError(alert_id)
            if current.status == "dismissed":
                return None
            return replace(current, status="dismissed", snooze_until=None)

        self._require_owner(alert_id, requester_student_id)
        alert, applied = self._store.transition(alert_id, _apply)
        if applied:
            logger.info("alert dismissed alert_id=%s", alert_id)
        return AlertTransition(alert=alert, applied=applied)

    def mark_sent(self, alert_id: str, *, sent_at: datetime) -> AlertRecord:
        def _apply(current: AlertRecord) -> AlertRecord | None:
            if current.status == "dismissed":
                return None
            return replace(current, last_sent_at=sent_at)

        alert, _ = self._store.transition(alert_id, _apply)
        return alert

    def list_active(
        self,
        student_id: str,
        *,
        include_snoozed: bool = False,
        now: datetime | None = None,
    ) -> list[ActiveAlertView]:
        reference_now = now or _now_utc()
        views: list[ActiveAlertView] = []
        for alert in self._store.list_alerts_for_student(student_id, statuses=("pending", "snoozed")):
            snoozed = is_effectively_snoozed(alert, reference_now)
            if snoozed and not include_snoozed:
                continue
            views.append(self._view(alert, snoozed))

        views.sort(key=lambda view: view.alert.created_at, reverse=True)
        views.sort(key=lambda view: (view.deadline is None, view.deadline or date.max))
        return views

    def _view(self, alert: AlertRecord, effectively_snoozed: bool) -> ActiveAlertView:
        application = None
        if alert.application_id and self._data_source is not None:
            application = self._data_source.get_application(alert.application_id)
        if application is None:
            return ActiveAlertView(alert=alert, effectively_snoozed=effectively_snoozed)
        return ActiveAlertView(
            alert=alert,
            effectively_snoozed=effectively_snoozed,
            scholarship_id=application.scholarship.scholarship_id,
            scholarship_name=application.scholarship.name,
            award_amount=application.scholarship.award_amount,
            deadline=application.scholarship.deadline,
        )
