"""Job record store backed by SQLModel + SQLite."""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime
from pathlib import Path
from typing import Any

from sqlalchemy import and_, func, not_
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from cv_orchestrator.jobs.models import (
    JobCreate,
    JobDetails,
    JobError,
    JobEventName,
    JobEventView,
    JobStatus,
    JobType,
    JobView,
)
from cv_orchestrator.storage.alembic_runner import upgrade_head
from cv_orchestrator.storage.common import (
    build_sqlite_engine,
    dump_json,
    load_json_object,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
)
from cv_orchestrator.storage.sqlmodel_models import Job, JobEvent

_DATETIME_COLUMNS = frozenset(
    {"run_after", "queued_at", "started_at", "heartbeat_at", "completed_at", "updated_at"},
)


class JobRepository:
    """Durable job records and their audit trail.

    Status columns are written only through ``compare_and_set_status``, which
    ``JobStateMachine`` owns; everything else here is reads, inserts and
    progress bookkeeping.
    """

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def insert_job(self, payload: JobCreate, *, job_id: str, now: datetime) -> JobView:
        """Create a pending job together with its ``job.created`` event."""

        with Session(self.engine) as session:
            row = Job(
                job_id=job_id,
                user_id=payload.user_id,
                resource_id=payload.resource_id,
                job_type=payload.job_type.value,
                status=JobStatus.PENDING.value,
                priority=payload.priority,
                progress=0,
                attempt=1,
                max_retries=payload.max_retries,
                timeout_seconds=payload.timeout_seconds,
                payload_json=dump_json(payload.payload),
                run_after=to_db_datetime(now),
                created_at=to_db_datetime(now),
                updated_at=to_db_datetime(now),
            )
            session.add(row)
            _add_event(
                session=session,
                job_id=job_id,
                event_type=JobEventName.CREATED.value,
                status_from=None,
                status_to=JobStatus.PENDING,
                details={
                    "job_type": payload.job_type.value,
                    "priority": payload.priority,
                    "max_retries": payload.max_retries,
                    "user_id": payload.user_id,
                },
                now=now,
            )
            session.commit()
            session.refresh(row)
            return _to_job_view(row)

    def get_job(self, job_id: str) -> JobView | None:
        with Session(self.engine) as session:
            row = session.get(Job, job_id)
            return _to_job_view(row) if row is not None else None

    def get_job_details(self, job_id: str) -> JobDetails | None:
        """Return job with its ordered event stream."""

        with Session(self.engine) as session:
            row = session.get(Job, job_id)
            if row is None:
                return None
            event_rows = session.exec(
                select(JobEvent)
                .where(JobEvent.job_id == job_id)
                .order_by(col(JobEvent.created_at).asc(), col(JobEvent.id).asc()),
            ).all()
            job = _to_job_view(row)

        events = [
            JobEventView(
                event_id=event.id or 0,
                job_id=event.job_id,
                event_type=event.event_type,
                status_from=JobStatus(event.status_from) if event.status_from else None,
                status_to=JobStatus(event.status_to) if event.status_to else None,
                created_at=to_utc_aware_datetime(event.created_at),
                details=load_json_object(event.details_json),
            )
            for event in event_rows
        ]
        return JobDetails(job=job, events=events)

    def list_jobs(
        self,
        *,
        user_id: str | None = None,
        status: JobStatus | None = None,
        job_type: JobType | None = None,
        limit: int = 50,
    ) -> list[JobView]:
        """List recent jobs, newest first."""

        with Session(self.engine) as session:
            statement = select(Job)
            if user_id is not None:
                statement = statement.where(Job.user_id == user_id)
            if status is not None:
                statement = statement.where(Job.status == status.value)
            if job_type is not None:
                statement = statement.where(Job.job_type == job_type.value)
            rows = session.exec(
                statement.order_by(col(Job.created_at).desc()).limit(limit),
            ).all()
            return [_to_job_view(row) for row in rows]

    def list_admission_candidates(
        self,
        *,
        now: datetime,
        limit: int,
        saturated_users: Iterable[str] = (),
        exempt_types: Iterable[str] = (),
    ) -> list[JobView]:
        """Pending and not-yet-claimed queued jobs in admission order.

        Pending jobs of ``saturated_users`` are left out unless their type is
        in ``exempt_types``; queued jobs already hold a slot and always show up.
        """

        statement = select(Job).where(
            col(Job.status).in_([JobStatus.PENDING.value, JobStatus.QUEUED.value]),
            col(Job.run_after) <= to_db_datetime(now),
        )
        saturated = sorted(set(saturated_users))
        if saturated:
            held_back = [
                Job.status == JobStatus.PENDING.value,
                col(Job.user_id).in_(saturated),
            ]
            exempt = sorted(set(exempt_types))
            if exempt:
                held_back.append(col(Job.job_type).not_in(exempt))
            statement = statement.where(not_(and_(*held_back)))
        with Session(self.engine) as session:
            rows = session.exec(
                statement.order_by(
                    col(Job.priority).desc(),
                    col(Job.created_at).asc(),
                    col(Job.job_id).asc(),
                )
                .limit(limit),
            ).all()
            return [_to_job_view(row) for row in rows]

    def list_due_retries(self, *, now: datetime, limit: int) -> list[JobView]:
        """Retrying jobs whose backoff delay has elapsed."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(Job)
                .where(
                    Job.status == JobStatus.RETRYING.value,
                    col(Job.run_after) <= to_db_datetime(now),
                )
                .order_by(
                    col(Job.priority).desc(),
                    col(Job.run_after).asc(),
                    col(Job.created_at).asc(),
                )
                .limit(limit),
            ).all()
            return [_to_job_view(row) for row in rows]

    def list_in_status(self, statuses: Iterable[JobStatus]) -> list[JobView]:
        values = [status.value for status in statuses]
        with Session(self.engine) as session:
            rows = session.exec(
                select(Job).where(col(Job.status).in_(values)).order_by(col(Job.created_at)),
            ).all()
            return [_to_job_view(row) for row in rows]

    def count_by_user(
        self,
        *,
        statuses: Iterable[JobStatus],
        exclude_types: Iterable[str] = (),
    ) -> dict[str, int]:
        """Count jobs per user in the given statuses."""

        excluded = list(exclude_types)
        with Session(self.engine) as session:
            statement = select(Job.user_id, func.count()).where(
                col(Job.status).in_([status.value for status in statuses]),
            )
            if excluded:
                statement = statement.where(col(Job.job_type).not_in(excluded))
            rows = session.exec(statement.group_by(Job.user_id)).all()
        return {str(user_id): int(count) for user_id, count in rows}

    def count_by_status(self) -> dict[str, int]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(Job.status, func.count()).group_by(Job.status).order_by(Job.status),
            ).all()
        return {str(status): int(count) for status, count in rows}

    def compare_and_set_status(  # noqa: PLR0913
        self,
        *,
        job_id: str,
        expected: JobStatus,
        target: JobStatus,
        values: dict[str, Any],
        event_type: str,
        details: dict[str, Any],
        now: datetime,
    ) -> JobView | None:
        """Move ``expected`` -> ``target`` atomically; None when status moved on."""

        columns = {
            key: to_db_datetime(value) if key in _DATETIME_COLUMNS and value is not None else value
            for key, value in values.items()
        }
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Job)
                .where(
                    col(Job.job_id) == job_id,
                    col(Job.status) == expected.value,
                )
                .values(
                    status=target.value,
                    updated_at=to_db_datetime(now),
                    **columns,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return None
            _add_event(
                session=session,
                job_id=job_id,
                event_type=event_type,
                status_from=expected,
                status_to=target,
                details=details,
                now=now,
            )
            session.commit()
            row = session.exec(select(Job).where(Job.job_id == job_id)).one()
            return _to_job_view(row)

    def record_progress(
        self,
        *,
        job_id: str,
        progress: int,
        step: str | None,
        now: datetime,
    ) -> JobView | None:
        """Raise progress of a processing job and refresh its heartbeat.

        Lower values than the stored progress are rejected so progress never
        moves backwards while the job is processing.
        """

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Job)
                .where(
                    col(Job.job_id) == job_id,
                    col(Job.status) == JobStatus.PROCESSING.value,
                    col(Job.progress) <= progress,
                )
                .values(
                    progress=progress,
                    progress_step=step,
                    heartbeat_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return None
            _add_event(
                session=session,
                job_id=job_id,
                event_type=JobEventName.PROGRESS.value,
                status_from=JobStatus.PROCESSING,
                status_to=JobStatus.PROCESSING,
                details={"progress": progress, "step": step},
                now=now,
            )
            session.commit()
            row = session.exec(select(Job).where(Job.job_id == job_id)).one()
            return _to_job_view(row)


def _add_event(  # noqa: PLR0913
    *,
    session: Session,
    job_id: str,
    event_type: str,
    status_from: JobStatus | None,
    status_to: JobStatus | None,
    details: dict[str, Any],
    now: datetime,
) -> None:
    session.add(
        JobEvent(
            job_id=job_id,
            event_type=event_type,
            status_from=status_from.value if status_from is not None else None,
            status_to=status_to.value if status_to is not None else None,
            details_json=dump_json(details) if details else None,
            created_at=to_db_datetime(now),
        ),
    )


def _to_job_view(row: Job) -> JobView:
    return JobView(
        job_id=row.job_id,
        user_id=row.user_id,
        resource_id=row.resource_id,
        job_type=JobType(row.job_type),
        status=JobStatus(row.status),
        priority=row.priority,
        progress=row.progress,
        progress_step=row.progress_step,
        attempt=row.attempt,
        max_retries=row.max_retries,
        timeout_seconds=row.timeout_seconds,
        payload=load_json_object(row.payload_json),
        result=load_json_object(row.result_json) if row.result_json is not None else None,
        error=JobError.from_payload(load_json_object(row.error_json))
        if row.error_json is not None
        else None,
        worker_id=row.worker_id,
        run_after=to_utc_aware_datetime(row.run_after),
        queued_at=optional_utc(row.queued_at),
        started_at=optional_utc(row.started_at),
        heartbeat_at=optional_utc(row.heartbeat_at),
        completed_at=optional_utc(row.completed_at),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
