from __future__ import annotations

from datetime import date, datetime
from typing import Literal, get_args

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

AlertKind = Literal[
    "deadline-30d",
    "deadline-14d",
    "deadline-7d",
    "deadline-3d",
    "deadline-1d",
    "deadline-0d",
    "recommendation-reminder",
    "goal-completion",
    "at-risk",
]
AlertStatus = Literal["pending", "snoozed", "dismissed"]
AlertAction = Literal["snooze", "dismiss", "upload"]
JobName = Literal[
    "deadline-alerts",
    "recommendation-reminders",
    "goal-completion",
    "at-risk",
]
JobTrigger = Literal["schedule", "manual"]
JobRunStatus = Literal["completed", "failed"]
EntityFailureCode = Literal[
    "dispatch_failed",
    "dispatch_timeout",
    "malformed_record",
    "alert_store_error",
    "follow_up_failed",
]
ActionOutcome = Literal["snoozed", "dismissed", "already_handled"]

ALERT_KINDS: frozenset[str] = frozenset(get_args(AlertKind))
ALERT_STATUSES: frozenset[str] = frozenset(get_args(AlertStatus))
ALERT_ACTIONS: frozenset[str] = frozenset(get_args(AlertAction))
ACTIVE_ALERT_STATUSES: frozenset[str] = frozenset({"pending", "snoozed"})
STUDENT_SCOPED_KINDS: frozenset[str] = frozenset({"goal-completion"})


def deadline_kind(days: int) -> AlertKind:
    kind = f"deadline-{days}d"
    return coerce_alert_kind(kind)


def coerce_alert_kind(value: str) -> AlertKind:
    if value not in ALERT_KINDS:
        raise ValueError(f"unknown alert kind: {value!r}")
    return value  # type: ignore[return-value]


def coerce_alert_status(value: str) -> AlertStatus:
    if value not in ALERT_STATUSES:
        raise ValueError(f"unknown alert status: {value!r}")
    return value  # type: ignore[return-value]


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class EntityFailure(_CamelModel):
    entity_id: str
    error_code: EntityFailureCode
    error_message: str
    alert_id: str | None = None


class JobRunResult(_CamelModel):
    job: JobName
    run_id: str | None = None
    trigger: JobTrigger = "schedule"
    run_at: datetime
    success: bool
    scanned_count: int = 0
    created_count: int = 0
    sent_count: int = 0
    skipped_count: int = 0
    failures: list[EntityFailure] = Field(default_factory=list)
    error: str | None = None


class JobFailureResponse(_CamelModel):
    success: Literal[False] = False
    job: JobName
    error: str
    run_id: str | None = None


class JobScheduleItem(_CamelModel):
    job: JobName
    cron: str
    description: str


class JobScheduleListResponse(_CamelModel):
    jobs: list[JobScheduleItem]


class JobRunSummary(_CamelModel):
    run_id: str
    job: JobName
    trigger: JobTrigger
    status: JobRunStatus
    run_at: datetime
    finished_at: datetime | None
    scanned_count: int
    created_count: int
    sent_count: int
    skipped_count: int
    failed_count: int
    error_message: str | None


class AlertSummary(BaseModel):
    alert_id: str
    kind: AlertKind
    status: AlertStatus
    cause: str
    student_id: str
    application_id: str | None
    created_at: datetime
    last_sent_at: datetime | None
    snooze_until: datetime | None


class ActiveAlertItem(AlertSummary):
    scholarship_id: str | None = None
    scholarship_name: str | None = None
    award_amount: float | None = None
    deadline: date | None = None
    effectively_snoozed: bool = False


class ActiveAlertListResponse(BaseModel):
    student_id: str
    include_snoozed: bool
    alerts: list[ActiveAlertItem]


class AlertTransitionResponse(BaseModel):
    alert: AlertSummary
    applied: bool


class ActionLinkError(BaseModel):
    category: Literal["missing_token", "link_expired", "link_invalid", "alert_not_found", "delivery_error"]
    message: str
    reference: str | None = None
