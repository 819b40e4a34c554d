"""Job lifecycle state machine: the single writer of job status."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from datetime import datetime
from typing import Any

from cv_orchestrator.errors import (
    JOB_MAX_RETRIES_EXCEEDED,
    ErrorKind,
    OrchestratorError,
    not_found,
)
from cv_orchestrator.jobs.ids import generate_job_id
from cv_orchestrator.jobs.models import (
    EVENT_FOR_STATUS,
    PROGRESS_MILESTONES,
    JobCreate,
    JobEventName,
    JobStatus,
    JobView,
    LifecycleEvent,
)
from cv_orchestrator.jobs.repository import JobRepository
from cv_orchestrator.storage.common import dump_json, utc_now

TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.QUEUED, JobStatus.CANCELLED}),
    JobStatus.QUEUED: frozenset({JobStatus.PROCESSING, JobStatus.CANCELLED, JobStatus.TIMEOUT}),
    JobStatus.PROCESSING: frozenset(
        {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED, JobStatus.TIMEOUT},
    ),
    JobStatus.FAILED: frozenset({JobStatus.RETRYING, JobStatus.CANCELLED}),
    JobStatus.RETRYING: frozenset({JobStatus.QUEUED, JobStatus.FAILED, JobStatus.CANCELLED}),
    JobStatus.TIMEOUT: frozenset({JobStatus.RETRYING, JobStatus.FAILED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}

LifecycleListener = Callable[[LifecycleEvent], None]


def can_transition(source: JobStatus, target: JobStatus) -> bool:
    return target in TRANSITIONS[source]


class JobStateMachine:
    """Validates and applies status transitions.

    Writes are serialized by one process-wide lock and guarded in the database
    by a compare-and-set on the source status, so two workers can never both
    move the same job out of the same state. Listeners run after commit,
    outside the lock.
    """

    def __init__(
        self,
        repository: JobRepository,
        *,
        clock: Callable[[], datetime] = utc_now,
        logger: logging.Logger | None = None,
    ) -> None:
        self.repository = repository
        self._clock = clock
        self._logger = logger or logging.getLogger(__name__)
        self._lock = threading.RLock()
        self._listeners: list[LifecycleListener] = []

    def subscribe(self, listener: LifecycleListener) -> None:
        self._listeners.append(listener)

    def create(self, payload: JobCreate) -> JobView:
        """Persist a new pending job."""

        now = self._clock()
        job_id = payload.job_id or generate_job_id(
            payload.job_type,
            resource_id=payload.resource_id,
            created_at=now,
        )
        with self._lock:
            job = self.repository.insert_job(payload, job_id=job_id, now=now)
        self._publish(JobEventName.CREATED, job, status_from=None, now=now)
        return job

    def transition(
        self,
        job_id: str,
        target: JobStatus,
        *,
        expected: JobStatus | None = None,
        values: dict[str, Any] | None = None,
        details: dict[str, Any] | None = None,
    ) -> JobView:
        """Apply one transition or raise ``invalid_transition`` leaving the record as is."""

        return self._apply(
            job_id,
            target,
            expected=expected,
            build_values=lambda _job: dict(values or {}),
            details=details,
        )

    def enqueue(self, job_id: str, *, expected: JobStatus | None = None) -> JobView:
        """Admit a pending job or re-admit a retrying one."""

        return self._apply(
            job_id,
            JobStatus.QUEUED,
            expected=expected,
            build_values=lambda _job: {"queued_at": self._clock()},
        )

    def start(self, job_id: str, *, worker_id: str) -> JobView:
        """Claim a queued job for execution (queued -> processing)."""

        def _values(_job: JobView) -> dict[str, Any]:
            now = self._clock()
            return {
                "started_at": now,
                "heartbeat_at": now,
                "completed_at": None,
                "progress": 0,
                "progress_step": None,
                "worker_id": worker_id,
                "result_json": None,
                "error_json": None,
                "error_kind": None,
            }

        return self._apply(
            job_id,
            JobStatus.PROCESSING,
            expected=JobStatus.QUEUED,
            build_values=_values,
            details={"worker_id": worker_id},
        )

    def complete(self, job_id: str, result: dict[str, Any]) -> JobView:
        """Record a successful result (processing -> completed)."""

        return self._apply(
            job_id,
            JobStatus.COMPLETED,
            expected=JobStatus.PROCESSING,
            build_values=lambda _job: {
                "result_json": dump_json(result),
                "error_json": None,
                "error_kind": None,
                "progress": PROGRESS_MILESTONES["completed"],
                "progress_step": "completed",
                "completed_at": self._clock(),
            },
        )

    def fail(
        self,
        job_id: str,
        error: OrchestratorError,
        *,
        expected: JobStatus = JobStatus.PROCESSING,
    ) -> JobView:
        """Record a failure; ``expected`` is processing, retrying or timeout."""

        return self._apply(
            job_id,
            JobStatus.FAILED,
            expected=expected,
            build_values=lambda _job: {
                "result_json": None,
                "error_json": dump_json(error.to_payload()),
                "error_kind": error.kind.value,
                "completed_at": self._clock(),
            },
            details={"code": error.code, "kind": error.kind.value, "retryable": error.retryable},
        )

    def time_out(self, job_id: str, error: OrchestratorError, *, expected: JobStatus) -> JobView:
        """Force a stuck queued/processing job into ``timeout``."""

        return self._apply(
            job_id,
            JobStatus.TIMEOUT,
            expected=expected,
            build_values=lambda _job: {
                "result_json": None,
                "error_json": dump_json(error.to_payload()),
                "error_kind": error.kind.value,
            },
            details={"code": error.code, "message": error.message},
        )

    def schedule_retry(self, job_id: str, *, run_after: datetime, delay_seconds: float) -> JobView:
        """Move a failed/timed-out job to ``retrying`` and bump its attempt."""

        def _values(job: JobView) -> dict[str, Any]:
            if job.attempt + 1 > job.max_retries + 1:
                raise OrchestratorError(
                    ErrorKind.VALIDATION,
                    f"Retry budget exhausted for job {job_id} "
                    f"(attempt={job.attempt}, max_retries={job.max_retries}).",
                    code=JOB_MAX_RETRIES_EXCEEDED,
                    context={"job_id": job_id},
                )
            return {
                "attempt": job.attempt + 1,
                "run_after": run_after,
                "completed_at": None,
                "worker_id": None,
            }

        return self._apply(
            job_id,
            JobStatus.RETRYING,
            expected=None,
            build_values=_values,
            details={
                "run_after": run_after.isoformat(),
                "delay_seconds": round(delay_seconds, 3),
            },
        )

    def cancel(self, job_id: str, *, reason: str = "cancelled by request") -> JobView:
        """Cancel from any state that allows it; terminal states raise."""

        error = OrchestratorError(ErrorKind.CANCELLED, reason, context={"job_id": job_id})
        return self._apply(
            job_id,
            JobStatus.CANCELLED,
            expected=None,
            build_values=lambda _job: {
                "result_json": None,
                "error_json": dump_json(error.to_payload()),
                "error_kind": error.kind.value,
                "completed_at": self._clock(),
            },
            details={"reason": reason},
        )

    def report_progress(self, job_id: str, progress: int, *, step: str | None = None) -> bool:
        """Raise progress of a processing job; False when ignored."""

        clamped = max(0, min(100, int(progress)))
        now = self._clock()
        with self._lock:
            job = self.repository.record_progress(
                job_id=job_id,
                progress=clamped,
                step=step,
                now=now,
            )
        if job is None:
            return False
        self._publish(
            JobEventName.PROGRESS,
            job,
            status_from=JobStatus.PROCESSING,
            now=now,
            details={"progress": clamped, "step": step},
        )
        return True

    def _apply(
        self,
        job_id: str,
        target: JobStatus,
        *,
        expected: JobStatus | None,
        build_values: Callable[[JobView], dict[str, Any]],
        details: dict[str, Any] | None = None,
    ) -> JobView:
        with self._lock:
            current = self.repository.get_job(job_id)
            if current is None:
                raise not_found("Job", job_id)
            source = current.status
            if expected is not None and source != expected:
                raise _invalid_transition(job_id, source, target, expected=expected)
            if not can_transition(source, target):
                raise _invalid_transition(job_id, source, target)

            now = self._clock()
            event_details = {"attempt": current.attempt, **(details or {})}
            updated = self.repository.compare_and_set_status(
                job_id=job_id,
                expected=source,
                target=target,
                values=build_values(current),
                event_type=EVENT_FOR_STATUS[target].value,
                details=event_details,
                now=now,
            )
            if updated is None:
                latest = self.repository.get_job(job_id)
                raise _invalid_transition(
                    job_id,
                    latest.status if latest is not None else source,
                    target,
                    expected=source,
                )

        self._logger.info(
            "Job %s %s -> %s (attempt=%d)",
            job_id,
            source.value,
            target.value,
            updated.attempt,
        )
        self._publish(
            EVENT_FOR_STATUS[target],
            updated,
            status_from=source,
            now=now,
            details=event_details,
        )
        return updated

    def _publish(
        self,
        name: JobEventName,
        job: JobView,
        *,
        status_from: JobStatus | None,
        now: datetime,
        details: dict[str, Any] | None = None,
    ) -> None:
        event = LifecycleEvent(
            name=name,
            job=job,
            status_from=status_from,
            occurred_at=now,
            details=dict(details or {}),
        )
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                self._logger.exception(
                    "Lifecycle listener failed for %s on %s",
                    name.value,
                    job.job_id,
                )


def _invalid_transition(
    job_id: str,
    source: JobStatus,
    target: JobStatus,
    *,
    expected: JobStatus | None = None,
) -> OrchestratorError:
    message = f"Illegal transition for job {job_id}: {source.value} -> {target.value}"
    if expected is not None and expected != source:
        message += f" (expected {expected.value})"
    return OrchestratorError(
        ErrorKind.INVALID_TRANSITION,
        message,
        context={
            "job_id": job_id,
            "from": source.value,
            "to": target.value,
            "expected": expected.value if expected is not None else None,
        },
    )
