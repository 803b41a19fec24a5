from __future__ import annotations

import json
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from threading import Lock
from typing import Protocol

from sqlalchemy import DateTime, Integer, String, Text, create_engine, select
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from .models import JobName, JobRunResult, JobRunStatus, JobTrigger


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class JobRunRecord:
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
    failures_json: str = "[]"


def _failures_json(result: JobRunResult) -> str:
    return json.dumps(
        [failure.model_dump(mode="json", by_alias=True) for failure in result.failures],
        sort_keys=True,
        separators=(",", ":"),
    )


class JobRunRepository(Protocol):
    def reset(self) -> None: ...

    def record_run(self, result: JobRunResult, *, finished_at: datetime) -> JobRunRecord: ...

    def get_latest_run(self, job: JobName) -> JobRunRecord | None: ...


class InMemoryJobRunRepository:
    def __init__(self) -> None:
        self._lock = Lock()
        self._run_counter = 1
        self._runs: dict[str, JobRunRecord] = {}

    def reset(self) -> None:
        with self._lock:
            self._run_counter = 1
            self._runs.clear()

    def record_run(self, result: JobRunResult, *, finished_at: datetime) -> JobRunRecord:
        with self._lock:
            run_id = result.run_id or f"jrun_{self._run_counter:06d}"
            self._run_counter += 1
            record = JobRunRecord(
                run_id=run_id,
                job=result.job,
                trigger=result.trigger,
                status="completed" if result.success else "failed",
                run_at=_coerce_utc(result.run_at),
                finished_at=_coerce_utc(finished_at),
                scanned_count=result.scanned_count,
                created_count=result.created_count,
                sent_count=result.sent_count,
                skipped_count=result.skipped_count,
                failed_count=len(result.failures),
                error_message=result.error,
                failures_json=_failures_json(result),
            )
            self._runs[run_id] = record
            return record

    def get_latest_run(self, job: JobName) -> JobRunRecord | None:
        with self._lock:
            runs = [run for run in self._runs.values() if run.job == job]
        if not runs:
            return None
        return max(runs, key=lambda run: (run.run_at, run.run_id))


class JobRunsBase(DeclarativeBase):
    pass


class _JobRunRow(JobRunsBase):
    __tablename__ = "alert_job_runs"

    run_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    job: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    trigger: Mapped[str] = mapped_column(String(16), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    run_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    scanned_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    sent_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    skipped_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    failures_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")


def _record_from_row(row: _JobRunRow) -> JobRunRecord:
    return JobRunRecord(
        run_id=row.run_id,
        job=row.job,  # type: ignore[arg-type]
        trigger=row.trigger,  # type: ignore[arg-type]
        status=row.status,  # type: ignore[arg-type]
        run_at=_coerce_utc(row.run_at),
        finished_at=_coerce_utc(row.finished_at) if row.finished_at is not None else None,
        scanned_count=row.scanned_count,
        created_count=row.created_count,
        sent_count=row.sent_count,
        skipped_count=row.skipped_count,
        failed_count=row.failed_count,
        error_message=row.error_message,
        failures_json=row.failures_json,
    )


class SqlAlchemyJobRunRepository:
    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for JOB_RUN_STORE_BACKEND=postgres")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            JobRunsBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.query(_JobRunRow).delete()

    def record_run(self, result: JobRunResult, *, finished_at: datetime) -> JobRunRecord:
        row = _JobRunRow(
            run_id=result.run_id or f"jrun_{secrets.token_hex(8)}",
            job=result.job,
            trigger=result.trigger,
            status="completed" if result.success else "failed",
            run_at=_coerce_utc(result.run_at),
            finished_at=_coerce_utc(finished_at),
            scanned_count=result.scanned_count,
            created_count=result.created_count,
            sent_count=result.sent_count,
            skipped_count=result.skipped_count,
            failed_count=len(result.failures),
            error_message=result.error,
            failures_json=_failures_json(result),
        )
        with self._session() as session:
            with session.begin():
                session.add(row)
        return _record_from_row(row)

    def get_latest_run(self, job: JobName) -> JobRunRecord | None:
        with self._session() as session:
            row = session.execute(
                select(_JobRunRow)
                .where(_JobRunRow.job == job)
                .order_by(_JobRunRow.run_at.desc(), _JobRunRow.finished_at.desc())
                .limit(1)
            ).scalar_one_or_none()
            if row is None:
                return None
            return _record_from_row(row)


def create_job_run_repository(*, backend: str, database_url: str) -> JobRunRepository:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyJobRunRepository(database_url)
    return InMemoryJobRunRepository()


def with_run_id(result: JobRunResult, record: JobRunRecord) -> JobRunResult:
    return result.model_copy(update={"run_id": record.run_id})
