"""Pure at-risk predicate for open scholarship applications.

Rules are checked in order and the first match wins:

* one day or less out and not ready for review -> critical
* two or three days out with any incomplete requirement -> urgent
* four to seven days out with weighted progress under 50% -> warning
* inside the inactivity window with no recent activity -> warning
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Literal

from .scholarship_data import ApplicationSnapshot

AtRiskReason = Literal[
    "one_day_not_ready",
    "three_day_incomplete",
    "seven_day_low_progress",
    "stalled_activity",
]
AtRiskSeverity = Literal["critical", "urgent", "warning"]

ESSAY_WEIGHT = 0.5
DOCUMENT_WEIGHT = 0.3
RECOMMENDATION_WEIGHT = 0.2
LOW_PROGRESS_PERCENT = 50.0

_SKIPPED_STATUSES = frozenset({"submitted", "awaiting_decision", "withdrawn", "awarded", "denied"})


@dataclass(frozen=True)
class AtRiskFinding:
    reason: AtRiskReason
    severity: AtRiskSeverity
    days_until_deadline: int
    progress_percent: float


def days_until_deadline(deadline: date, now: datetime) -> int:
    return (deadline - now.date()).days


def _ratio(done: int, required: int) -> float:
    if required <= 0:
        return 100.0
    return min(done, required) / required * 100.0


def calculate_progress(application: ApplicationSnapshot) -> float:
    return (
        _ratio(application.essays_complete, application.essays_required) * ESSAY_WEIGHT
        + _ratio(application.documents_uploaded, application.documents_required) * DOCUMENT_WEIGHT
        + _ratio(application.recommendations_received, application.recommendations_required)
        * RECOMMENDATION_WEIGHT
    )


def evaluate_at_risk(
    application: ApplicationSnapshot,
    now: datetime,
    *,
    inactivity_days: int = 14,
    inactivity_window_days: int = 14,
) -> AtRiskFinding | None:
    if application.status in _SKIPPED_STATUSES:
        return None

    days = days_until_deadline(application.scholarship.deadline, now)
    if days < 0:
        return None

    progress = calculate_progress(application)

    if days <= 1 and application.status != "ready_for_review":
        return AtRiskFinding("one_day_not_ready", "critical", days, progress)

    if 1 < days <= 3 and application.has_incomplete_requirements():
        return AtRiskFinding("three_day_incomplete", "urgent", days, progress)

    if 3 < days <= 7 and progress < LOW_PROGRESS_PERCENT:
        return AtRiskFinding("seven_day_low_progress", "warning", days, progress)

    if (
        inactivity_days > 0
        and days <= inactivity_window_days
        and application.status != "ready_for_review"
        and application.last_activity_at is not None
        and now - application.last_activity_at >= timedelta(days=inactivity_days)
    ):
        return AtRiskFinding("stalled_activity", "warning", days, progress)

    return None


def at_risk_message(finding: AtRiskFinding) -> str:
    days = finding.days_until_deadline
    if finding.reason == "seven_day_low_progress":
        return f"Deadline in {days} days with only {round(finding.progress_percent)}% complete"
    if finding.reason == "three_day_incomplete":
        return f"Deadline in {days} days with incomplete requirements"
    if finding.reason == "one_day_not_ready":
        return f"Deadline in {days} day{'' if days == 1 else 's'} - not ready for review"
    return f"No progress recorded recently and the deadline is {days} days away"


def recovery_steps(application: ApplicationSnapshot) -> list[str]:
    """Short, ordered suggestions for the at-risk email (essays, then documents, then letters)."""
    steps: list[str] = []
    essays = application.essays_required - application.essays_complete
    if essays > 0:
        steps.append(f"Finish {essays} essay{'s' if essays > 1 else ''}")
    documents = application.documents_required - application.documents_uploaded
    if documents > 0:
        steps.append(f"Upload {documents} remaining document{'s' if documents > 1 else ''}")
    letters = application.recommendations_required - application.recommendations_received
    if letters > 0:
        steps.append(f"Follow up with {letters} recommender{'s' if letters > 1 else ''}")
    return steps
