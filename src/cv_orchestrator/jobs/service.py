"""Job submission and query surface used by collaborators and the CLI."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any

from cv_orchestrator.config import MAX_RETRIES_CEILING, RetrySettings, SchedulerSettings
from cv_orchestrator.errors import (
    JOB_MAX_RETRIES_EXCEEDED,
    ErrorKind,
    OrchestratorError,
    not_found,
    validation_error,
)
from cv_orchestrator.jobs.models import (
    DEFAULT_PRIORITY_BY_TYPE,
    JobCreate,
    JobDetails,
    JobEventView,
    JobPriority,
    JobStatus,
    JobType,
    JobView,
)
from cv_orchestrator.jobs.state_machine import JobStateMachine
from cv_orchestrator.storage.common import utc_now


class JobService:
    """Submit, inspect, cancel and manually retry jobs.

    ``submit`` only writes a pending record; execution happens on the
    scheduler. Ownership checks apply whenever a ``user_id`` is given.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        state_machine: JobStateMachine,
        scheduler_settings: SchedulerSettings,
        retry_settings: RetrySettings,
        on_terminal: Callable[[JobView], None] | None = None,
        clock: Callable[[], datetime] = utc_now,
        logger: logging.Logger | None = None,
    ) -> None:
        self.state_machine = state_machine
        self.repository = state_machine.repository
        self.scheduler_settings = scheduler_settings
        self.retry_settings = retry_settings
        self._on_terminal = on_terminal
        self._clock = clock
        self._logger = logger or logging.getLogger(__name__)

    def submit(  # noqa: PLR0913
        self,
        job_type: JobType | str,
        payload: dict[str, Any],
        *,
        user_id: str,
        priority: int | None = None,
        max_retries: int | None = None,
        resource_id: str | None = None,
    ) -> str:
        resolved_type = _parse_job_type(job_type)
        if not isinstance(payload, dict):
            raise validation_error("Job payload must be a JSON object.")
        if not user_id or not user_id.strip():
            raise validation_error("user_id is required.")
        if max_retries is None:
            max_retries = self.retry_settings.max_retries_for(resolved_type)
        if not 0 <= max_retries <= MAX_RETRIES_CEILING:
            raise validation_error(
                f"max_retries must be between 0 and {MAX_RETRIES_CEILING}.",
                max_retries=max_retries,
            )
        if priority is None:
            priority = DEFAULT_PRIORITY_BY_TYPE.get(resolved_type, JobPriority.NORMAL)

        job = self.state_machine.create(
            JobCreate(
                job_type=resolved_type,
                user_id=user_id.strip(),
                payload=payload,
                priority=int(priority),
                max_retries=max_retries,
                timeout_seconds=self.scheduler_settings.timeout_for(resolved_type),
                resource_id=resource_id,
            ),
        )
        self._logger.info(
            "Submitted %s job %s for user %s (priority=%d)",
            resolved_type.value,
            job.job_id,
            job.user_id,
            job.priority,
        )
        return job.job_id

    def get(self, job_id: str, *, user_id: str | None = None) -> JobView:
        job = self.repository.get_job(job_id)
        if job is None:
            raise not_found("Job", job_id)
        _check_owner(job, user_id)
        return job

    def list_jobs(
        self,
        *,
        user_id: str | None = None,
        status: JobStatus | None = None,
        job_type: JobType | None = None,
        limit: int = 50,
    ) -> list[JobView]:
        return self.repository.list_jobs(
            user_id=user_id,
            status=status,
            job_type=job_type,
            limit=limit,
        )

    def logs(self, job_id: str, *, user_id: str | None = None) -> list[JobEventView]:
        details = self._details(job_id, user_id=user_id)
        return details.events

    def cancel(
        self,
        job_id: str,
        *,
        user_id: str | None = None,
        reason: str = "cancelled by request",
    ) -> JobView:
        self.get(job_id, user_id=user_id)
        cancelled = self.state_machine.cancel(job_id, reason=reason)
        if self._on_terminal is not None:
            self._on_terminal(cancelled)
        return cancelled

    def retry(self, job_id: str, *, user_id: str | None = None) -> JobView:
        """Re-run a failed job now; only valid from ``failed`` with budget left."""

        job = self.get(job_id, user_id=user_id)
        if job.status != JobStatus.FAILED:
            raise OrchestratorError(
                ErrorKind.INVALID_TRANSITION,
                f"Only failed jobs can be retried; job {job_id} is {job.status.value}.",
                context={"job_id": job_id, "from": job.status.value, "to": "retrying"},
            )
        if job.retries_left <= 0:
            raise OrchestratorError(
                ErrorKind.VALIDATION,
                f"Job {job_id} has used all {job.max_retries} retries.",
                code=JOB_MAX_RETRIES_EXCEEDED,
                context={"job_id": job_id, "attempt": job.attempt},
            )
        return self.state_machine.schedule_retry(
            job_id,
            run_after=self._clock(),
            delay_seconds=0.0,
        )

    def _details(self, job_id: str, *, user_id: str | None) -> JobDetails:
        details = self.repository.get_job_details(job_id)
        if details is None:
            raise not_found("Job", job_id)
        _check_owner(details.job, user_id)
        return details


def _parse_job_type(value: JobType | str) -> JobType:
    if isinstance(value, JobType):
        return value
    try:
        return JobType(str(value).strip().lower())
    except ValueError as error:
        raise validation_error(
            f"Unknown job type: {value!r}",
            allowed=[job_type.value for job_type in JobType],
        ) from error


def _check_owner(job: JobView, user_id: str | None) -> None:
    if user_id is not None and job.user_id != user_id:
        raise OrchestratorError(
            ErrorKind.FORBIDDEN,
            f"Job {job.job_id} belongs to another user.",
            context={"job_id": job.job_id},
        )
