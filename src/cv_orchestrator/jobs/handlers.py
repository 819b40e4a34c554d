"""Execution context and handler registry for job types."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Mapping
from typing import Any, Protocol

from cv_orchestrator.errors import ErrorKind, OrchestratorError, validation_error
from cv_orchestrator.jobs.models import PROGRESS_MILESTONES, JobStatus, JobType, JobView
from cv_orchestrator.jobs.state_machine import JobStateMachine


class JobCancelled(Exception):
    """Raised at a checkpoint once the job is no longer ours to finish."""

    def __init__(self, job_id: str, status: JobStatus | None) -> None:
        label = status.value if status is not None else "missing"
        super().__init__(f"Job {job_id} stopped at checkpoint (status={label})")
        self.job_id = job_id
        self.status = status


class JobContext:
    """What a handler sees while running one attempt.

    ``checkpoint()`` must be called between side-effecting steps; it raises
    ``JobCancelled`` when the job was cancelled, timed out by the watchdog or
    reclaimed, so a handler never persists a result for a job it lost.
    """

    def __init__(
        self,
        *,
        job: JobView,
        state_machine: JobStateMachine,
        cancel_event: threading.Event,
        logger: logging.Logger | None = None,
    ) -> None:
        self.job = job
        self.state_machine = state_machine
        self.cancel_event = cancel_event
        self.logger = logger or logging.getLogger(__name__)

    @property
    def payload(self) -> dict[str, Any]:
        return self.job.payload

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def checkpoint(self) -> None:
        if self.cancel_event.is_set():
            raise JobCancelled(self.job.job_id, None)
        current = self.state_machine.repository.get_job(self.job.job_id)
        if (
            current is None
            or current.status != JobStatus.PROCESSING
            or current.attempt != self.job.attempt
        ):
            self.cancel_event.set()
            raise JobCancelled(self.job.job_id, current.status if current else None)

    def progress(self, step: str) -> None:
        """Checkpoint, then advance to a named milestone."""

        self.checkpoint()
        self.state_machine.report_progress(
            self.job.job_id,
            PROGRESS_MILESTONES[step],
            step=step,
        )

    def require(self, *fields: str) -> dict[str, Any]:
        missing = [name for name in fields if _is_blank(self.payload.get(name))]
        if missing:
            raise validation_error(
                f"Payload for {self.job.job_type.value} job is missing: {', '.join(missing)}",
                missing=missing,
            )
        return {name: self.payload[name] for name in fields}


class JobHandler(Protocol):
    """Executes one attempt of a job and returns its result payload."""

    def handle(self, context: JobContext) -> dict[str, Any]:
        """Run the attempt; raise ``OrchestratorError`` on expected failures."""


class HandlerRegistry:
    def __init__(self, handlers: Mapping[JobType, JobHandler] | None = None) -> None:
        self._handlers: dict[JobType, JobHandler] = dict(handlers or {})

    def register(self, job_type: JobType, handler: JobHandler) -> None:
        self._handlers[job_type] = handler

    def get(self, job_type: JobType) -> JobHandler:
        handler = self._handlers.get(job_type)
        if handler is None:
            raise OrchestratorError(
                ErrorKind.VALIDATION,
                f"No handler registered for job type {job_type.value}",
                context={"job_type": job_type.value},
            )
        return handler

    def registered_types(self) -> list[JobType]:
        return sorted(self._handlers, key=lambda job_type: job_type.value)


CollaboratorCall = Callable[[JobView], dict[str, Any]]


class CollaboratorHandler:
    """Delegates a job to an external collaborator (mailer, renderer).

    The collaborator receives the job view and returns the result payload;
    the handler only adds the progress checkpoints around it.
    """

    def __init__(self, call: CollaboratorCall, *, required_fields: tuple[str, ...] = ()) -> None:
        self._call = call
        self.required_fields = required_fields

    def handle(self, context: JobContext) -> dict[str, Any]:
        context.progress("started")
        context.require(*self.required_fields)
        context.progress("input_validated")
        result = self._call(context.job)
        context.progress("saving")
        return dict(result)


def record_only(job: JobView) -> dict[str, Any]:
    """Default collaborator for deployments without a mailer or renderer."""

    return {"accepted": True, "job_type": job.job_type.value, "payload_keys": sorted(job.payload)}


def _is_blank(value: object) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    return False
