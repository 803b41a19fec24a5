from __future__ import annotations

import secrets
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from threading import Lock
from typing import Callable, Iterable, Protocol

from sqlalchemy import CheckConstraint, DateTime, Index, String, create_engine, select, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from .models import (
    ACTIVE_ALERT_STATUSES,
    STUDENT_SCOPED_KINDS,
    AlertKind,
    AlertStatus,
    coerce_alert_kind,
    coerce_alert_status,
)


class AlertNotFoundError(KeyError):
    """Raised when an alert id does not exist in the store."""


class DuplicateActiveAlertError(RuntimeError):
    """Raised when an active alert already exists for the same scope, kind and cause."""

    def __init__(self, scope_key: str, kind: str, cause: str) -> None:
        super().__init__(f"active alert already exists for {scope_key} {kind} {cause!r}")
        self.scope_key = scope_key
        self.kind = kind
        self.cause = cause


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _coerce_optional_utc(value: datetime | None) -> datetime | None:
    return _coerce_utc(value) if value is not None else None


def scope_key_for(*, kind: str, student_id: str, application_id: str | None) -> str:
    if kind in STUDENT_SCOPED_KINDS or not application_id:
        return f"student:{student_id}"
    return application_id


@dataclass(frozen=True)
class AlertRecord:
    alert_id: str
    student_id: str
    application_id: str | None
    kind: AlertKind
    status: AlertStatus
    cause: str
    created_at: datetime
    last_sent_at: datetime | None = None
    snooze_until: datetime | None = None

    @property
    def scope_key(self) -> str:
        return scope_key_for(kind=self.kind, student_id=self.student_id, application_id=self.application_id)

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_ALERT_STATUSES


def _validate_record(record: AlertRecord) -> AlertRecord:
    coerce_alert_kind(record.kind)
    coerce_alert_status(record.status)
    if (record.status == "snoozed") != (record.snooze_until is not None):
        raise ValueError(
            f"alert {record.alert_id}: snooze_until must be set exactly when status is snoozed"
        )
    return record


# Mutators return the replacement record, or None to leave the alert untouched.
AlertMutator = Callable[[AlertRecord], "AlertRecord | None"]


class AlertStore(Protocol):
    def reset(self) -> None: ...

    def create_alert(
        self,
        *,
        student_id: str,
        application_id: str | None,
        kind: AlertKind,
        cause: str = "",
        now: datetime | None = None,
    ) -> AlertRecord: ...

    def get_alert(self, alert_id: str) -> AlertRecord | None: ...

    def find_latest_alert(self, *, scope_key: str, kind: AlertKind, cause: str = "") -> AlertRecord | None: ...

    def list_alerts_for_student(
        self,
        student_id: str,
        *,
        statuses: Iterable[str] | None = None,
    ) -> list[AlertRecord]: ...

    def transition(self, alert_id: str, mutate: AlertMutator) -> tuple[AlertRecord, bool]: ...


class InMemoryAlertStore:
    def __init__(self) -> None:
        self._lock = Lock()
        self._counter = 1
        self._alerts: dict[str, AlertRecord] = {}

    def reset(self) -> None:
        with self._lock:
            self._counter = 1
            self._alerts.clear()

    def create_alert(
        self,
        *,
        student_id: str,
        application_id: str | None,
        kind: AlertKind,
        cause: str = "",
        now: datetime | None = None,
    ) -> AlertRecord:
        kind = coerce_alert_kind(kind)
        scope_key = scope_key_for(kind=kind, student_id=student_id, application_id=application_id)
        with self._lock:
            for existing in self._alerts.values():
                if (
                    existing.is_active
                    and existing.scope_key == scope_key
                    and existing.kind == kind
                    and existing.cause == cause
                ):
                    raise DuplicateActiveAlertError(scope_key, kind, cause)
            alert_id = f"alrt_{self._counter:06d}"
            self._counter += 1
            record = AlertRecord(
                alert_id=alert_id,
                student_id=student_id,
                application_id=application_id,
                kind=kind,
                status="pending",
                cause=cause,
                created_at=_coerce_utc(now or _now_utc()),
            )
            self._alerts[alert_id] = record
            return record

    def get_alert(self, alert_id: str) -> AlertRecord | None:
        with self._lock:
            return self._alerts.get(alert_id)

    def find_latest_alert(self, *, scope_key: str, kind: AlertKind, cause: str = "") -> AlertRecord | None:
        kind = coerce_alert_kind(kind)
        with self._lock:
            matches = [
                record
                for record in self._alerts.values()
                if record.scope_key == scope_key and record.kind == kind and record.cause == cause
            ]
        if not matches:
            return None
        return max(matches, key=lambda record: (record.created_at, record.alert_id))

    def list_alerts_for_student(
        self,
        student_id: str,
        *,
        statuses: Iterable[str] | None = None,
    ) -> list[AlertRecord]:
        allowed = {coerce_alert_status(value) for value in statuses} if statuses is not None else None
        with self._lock:
            records = [
                record
                for record in self._alerts.values()
                if record.student_id == student_id and (allowed is None or record.status in allowed)
            ]
        return sorted(records, key=lambda record: (record.created_at, record.alert_id))

    def transition(self, alert_id: str, mutate: AlertMutator) -> tuple[AlertRecord, bool]:
        with self._lock:
            current = self._alerts.get(alert_id)
            if current is None:
                raise AlertNotFoundError(alert_id)
            updated = mutate(current)
            if updated is None:
                return current, False
            updated = _validate_record(replace(updated, alert_id=current.alert_id))
            self._alerts[alert_id] = updated
            return updated, True


class AlertsBase(DeclarativeBase):
    pass


class _AlertRow(AlertsBase):
    __tablename__ = "alerts"
    __table_args__ = (
        Index(
            "uq_alerts_active_scope_kind_cause",
            "scope_key",
            "kind",
            "cause",
            unique=True,
            postgresql_where=text("status IN ('pending', 'snoozed')"),
            sqlite_where=text("status IN ('pending', 'snoozed')"),
        ),
        Index("ix_alerts_student_status", "student_id", "status"),
        CheckConstraint("status IN ('pending', 'snoozed', 'dismissed')", name="ck_alerts_status"),
        CheckConstraint(
            "(status = 'snoozed') = (snooze_until IS NOT NULL)",
            name="ck_alerts_snooze_until_iff_snoozed",
        ),
    )

    alert_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    student_id: Mapped[str] = mapped_column(String(128), nullable=False)
    application_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    scope_key: Mapped[str] = mapped_column(String(160), nullable=False)
    kind: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    cause: Mapped[str] = mapped_column(String(160), nullable=False, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    snooze_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


def _record_from_row(row: _AlertRow) -> AlertRecord:
    return _validate_record(
        AlertRecord(
            alert_id=row.alert_id,
            student_id=row.student_id,
            application_id=row.application_id,
            kind=coerce_alert_kind(row.kind),
            status=coerce_alert_status(row.status),
            cause=row.cause,
            created_at=_coerce_utc(row.created_at),
            last_sent_at=_coerce_optional_utc(row.last_sent_at),
            snooze_until=_coerce_optional_utc(row.snooze_until),
        )
    )


class SqlAlchemyAlertStore:
    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for ALERT_STORE_BACKEND=postgres")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            AlertsBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.query(_AlertRow).delete()

    def create_alert(
        self,
        *,
        student_id: str,
        application_id: str | None,
        kind: AlertKind,
        cause: str = "",
        now: datetime | None = None,
    ) -> AlertRecord:
        kind = coerce_alert_kind(kind)
        scope_key = scope_key_for(kind=kind, student_id=student_id, application_id=application_id)
        row = _AlertRow(
            alert_id=f"alrt_{secrets.token_hex(8)}",
            student_id=student_id,
            application_id=application_id,
            scope_key=scope_key,
            kind=kind,
            status="pending",
            cause=cause,
            created_at=_coerce_utc(now or _now_utc()),
        )
        try:
            with self._session() as session:
                with session.begin():
                    session.add(row)
        except IntegrityError as exc:
            raise DuplicateActiveAlertError(scope_key, kind, cause) from exc
        return _record_from_row(row)

    def get_alert(self, alert_id: str) -> AlertRecord | None:
        with self._session() as session:
            row = session.get(_AlertRow, alert_id)
            if row is None:
                return None
            return _record_from_row(row)

    def find_latest_alert(self, *, scope_key: str, kind: AlertKind, cause: str = "") -> AlertRecord | None:
        kind = coerce_alert_kind(kind)
        with self._session() as session:
            row = session.execute(
                select(_AlertRow)
                .where(_AlertRow.scope_key == scope_key)
                .where(_AlertRow.kind == kind)
                .where(_AlertRow.cause == cause)
                .order_by(_AlertRow.created_at.desc(), _AlertRow.alert_id.desc())
                .limit(1)
            ).scalar_one_or_none()
            if row is None:
                return None
            return _record_from_row(row)

    def list_alerts_for_student(
        self,
        student_id: str,
        *,
        statuses: Iterable[str] | None = None,
    ) -> list[AlertRecord]:
        query = select(_AlertRow).where(_AlertRow.student_id == student_id)
        if statuses is not None:
            allowed = sorted({coerce_alert_status(value) for value in statuses})
            query = query.where(_AlertRow.status.in_(allowed))
        with self._session() as session:
            rows = session.execute(
                query.order_by(_AlertRow.created_at.asc(), _AlertRow.alert_id.asc())
            ).scalars()
            return [_record_from_row(row) for row in rows]

    def transition(self, alert_id: str, mutate: AlertMutator) -> tuple[AlertRecord, bool]:
        with self._session() as session:
            with session.begin():
                row = session.execute(
                    select(_AlertRow).where(_AlertRow.alert_id == alert_id).with_for_update()
                ).scalar_one_or_none()
                if row is None:
                    raise AlertNotFoundError(alert_id)
                current = _record_from_row(row)
                updated = mutate(current)
                if updated is None:
                    return current, False
                updated = _validate_record(replace(updated, alert_id=current.alert_id))
                row.status = updated.status
                row.snooze_until = updated.snooze_until
                row.last_sent_at = updated.last_sent_at
                return updated, True


def create_alert_store(*, backend: str, database_url: str) -> AlertStore:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyAlertStore(database_url)
    return InMemoryAlertStore()
