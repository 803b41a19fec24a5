"""Read-side contract for the scholarship tracker's relational data.

Detection jobs only ever see these snapshots. The tracker's own schema,
ORM and search index live outside this package; a deployment plugs in an
adapter that satisfies ``ScholarshipDataSource``.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import date, datetime, timezone
from threading import Lock
from typing import Literal, Protocol

ApplicationStatus = Literal[
    "not_started",
    "todo",
    "in_progress",
    "ready_for_review",
    "submitted",
    "awaiting_decision",
    "awarded",
    "denied",
    "withdrawn",
]
RecommendationStatus = Literal["requested", "reminded", "received"]
GoalStatus = Literal["in_progress", "completed"]

OPEN_APPLICATION_STATUSES: frozenset[str] = frozenset(
    {"not_started", "todo", "in_progress", "ready_for_review"}
)


class EntityNotFoundError(KeyError):
    """Raised when a scope entity referenced by id does not exist."""


@dataclass(frozen=True)
class StudentSnapshot:
    student_id: str
    display_name: str
    email: str


@dataclass(frozen=True)
class ScholarshipSnapshot:
    scholarship_id: str
    name: str
    award_amount: float
    deadline: date


@dataclass(frozen=True)
class ApplicationSnapshot:
    application_id: str
    student: StudentSnapshot
    scholarship: ScholarshipSnapshot
    status: ApplicationStatus
    essays_required: int = 0
    essays_complete: int = 0
    documents_required: int = 0
    documents_uploaded: int = 0
    recommendations_required: int = 0
    recommendations_received: int = 0
    last_activity_at: datetime | None = None

    def has_incomplete_requirements(self) -> bool:
        return (
            self.essays_complete < self.essays_required
            or self.documents_uploaded < self.documents_required
            or self.recommendations_received < self.recommendations_required
        )


@dataclass(frozen=True)
class RecommendationRequestSnapshot:
    recommendation_id: str
    application: ApplicationSnapshot
    recommender_name: str
    recommender_email: str
    status: RecommendationStatus
    received_at: datetime | None = None
    reminder_count: int = 0


@dataclass(frozen=True)
class FundingGoalSnapshot:
    goal_id: str
    student: StudentSnapshot
    target_amount: float
    secured_amount: float
    status: GoalStatus = "in_progress"
    revision: int = 1
    target_date: date | None = None


class ScholarshipDataSource(Protocol):
    def list_open_applications(self) -> list[ApplicationSnapshot]: ...

    def get_application(self, application_id: str) -> ApplicationSnapshot | None: ...

    def list_outstanding_recommendations(self) -> list[RecommendationRequestSnapshot]: ...

    def mark_recommendation_reminded(self, recommendation_id: str, *, reminded_at: datetime) -> None: ...

    def list_in_progress_goals(self) -> list[FundingGoalSnapshot]: ...

    def get_goal(self, goal_id: str) -> FundingGoalSnapshot | None: ...

    def mark_goal_completed(self, goal_id: str) -> None: ...


class InMemoryScholarshipDataSource:
    """Mutable in-process data source used for local runs and tests."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._applications: dict[str, ApplicationSnapshot] = {}
        self._recommendations: dict[str, RecommendationRequestSnapshot] = {}
        self._goals: dict[str, FundingGoalSnapshot] = {}

    def reset(self) -> None:
        with self._lock:
            self._applications.clear()
            self._recommendations.clear()
            self._goals.clear()

    def upsert_application(self, application: ApplicationSnapshot) -> None:
        with self._lock:
            self._applications[application.application_id] = application

    def upsert_recommendation(self, recommendation: RecommendationRequestSnapshot) -> None:
        with self._lock:
            self._recommendations[recommendation.recommendation_id] = recommendation

    def upsert_goal(self, goal: FundingGoalSnapshot) -> None:
        with self._lock:
            self._goals[goal.goal_id] = goal

    def reset_goal(self, goal_id: str, *, secured_amount: float) -> FundingGoalSnapshot:
        with self._lock:
            goal = self._goals.get(goal_id)
            if goal is None:
                raise EntityNotFoundError(goal_id)
            updated = replace(
                goal,
                status="in_progress",
                secured_amount=secured_amount,
                revision=goal.revision + 1,
            )
            self._goals[goal_id] = updated
            return updated

    def list_open_applications(self) -> list[ApplicationSnapshot]:
        with self._lock:
            return sorted(
                (
                    value
                    for value in self._applications.values()
                    if value.status in OPEN_APPLICATION_STATUSES
                ),
                key=lambda value: (value.scholarship.deadline, value.application_id),
            )

    def get_application(self, application_id: str) -> ApplicationSnapshot | None:
        with self._lock:
            return self._applications.get(application_id)

    def list_outstanding_recommendations(self) -> list[RecommendationRequestSnapshot]:
        with self._lock:
            return sorted(
                (
                    value
                    for value in self._recommendations.values()
                    if value.status in {"requested", "reminded"} and value.received_at is None
                ),
                key=lambda value: (value.application.scholarship.deadline, value.recommendation_id),
            )

    def get_recommendation(self, recommendation_id: str) -> RecommendationRequestSnapshot | None:
        with self._lock:
            return self._recommendations.get(recommendation_id)

    def mark_recommendation_reminded(self, recommendation_id: str, *, reminded_at: datetime) -> None:
        _ = reminded_at
        with self._lock:
            record = self._recommendations.get(recommendation_id)
            if record is None:
                raise EntityNotFoundError(recommendation_id)
            self._recommendations[recommendation_id] = replace(
                record,
                status="reminded",
                reminder_count=record.reminder_count + 1,
            )

    def list_in_progress_goals(self) -> list[FundingGoalSnapshot]:
        with self._lock:
            return sorted(
                (value for value in self._goals.values() if value.status == "in_progress"),
                key=lambda value: value.goal_id,
            )

    def get_goal(self, goal_id: str) -> FundingGoalSnapshot | None:
        with self._lock:
            return self._goals.get(goal_id)

    def mark_goal_completed(self, goal_id: str) -> None:
        with self._lock:
            goal = self._goals.get(goal_id)
            if goal is None:
                raise EntityNotFoundError(goal_id)
            self._goals[goal_id] = replace(goal, status="completed")


def now_utc() -> datetime:
    return datetime.now(timezone.utc)
