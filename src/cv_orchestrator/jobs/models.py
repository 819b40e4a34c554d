"""Domain models for the job queue, lifecycle and audit trail."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, IntEnum
from typing import Any

from cv_orchestrator.errors import ErrorKind, OrchestratorError


class JobType(str, Enum):
    """Kinds of work the engine knows how to execute."""

    PARSING = "parsing"
    GENERATION = "generation"
    ENHANCEMENT = "enhancement"
    ATS_ANALYSIS = "ats_analysis"
    WEBHOOK_DELIVERY = "webhook_delivery"
    EMAIL_NOTIFICATION = "email_notification"
    DOCUMENT_EXPORT = "document_export"


class JobStatus(str, Enum):
    """Durable job lifecycle states."""

    PENDING = "pending"
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    RETRYING = "retrying"
    TIMEOUT = "timeout"


class JobPriority(IntEnum):
    """Named priority levels; any integer is accepted, higher runs sooner."""

    LOW = 1
    NORMAL = 5
    HIGH = 10
    URGENT = 20
    CRITICAL = 50


class JobEventName(str, Enum):
    """Lifecycle events published to observers and kept in the job log."""

    CREATED = "job.created"
    QUEUED = "job.queued"
    STARTED = "job.started"
    PROGRESS = "job.progress"
    COMPLETED = "job.completed"
    FAILED = "job.failed"
    CANCELLED = "job.cancelled"
    RETRYING = "job.retrying"
    TIMEOUT = "job.timeout"


# No transition leaves these states.
TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.CANCELLED})
# Exactly one of result/error is set once a job rests in one of these.
SETTLED_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})
# Jobs holding a per-user concurrency slot.
ADMITTED_STATUSES = frozenset({JobStatus.QUEUED, JobStatus.PROCESSING})

EVENT_FOR_STATUS: dict[JobStatus, JobEventName] = {
    JobStatus.QUEUED: JobEventName.QUEUED,
    JobStatus.PROCESSING: JobEventName.STARTED,
    JobStatus.COMPLETED: JobEventName.COMPLETED,
    JobStatus.FAILED: JobEventName.FAILED,
    JobStatus.CANCELLED: JobEventName.CANCELLED,
    JobStatus.RETRYING: JobEventName.RETRYING,
    JobStatus.TIMEOUT: JobEventName.TIMEOUT,
}

DEFAULT_PRIORITY_BY_TYPE: dict[JobType, int] = {
    JobType.WEBHOOK_DELIVERY: JobPriority.HIGH,
    JobType.EMAIL_NOTIFICATION: JobPriority.NORMAL,
}

PROGRESS_MILESTONES: dict[str, int] = {
    "started": 10,
    "input_validated": 20,
    "prompt_built": 40,
    "ai_processing": 60,
    "validation_complete": 80,
    "saving": 90,
    "completed": 100,
}


@dataclass(slots=True)
class JobError:
    """Error stored on a job record."""

    kind: ErrorKind
    code: str
    message: str
    retryable: bool
    context: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_error(cls, error: OrchestratorError) -> JobError:
        return cls(
            kind=error.kind,
            code=error.code,
            message=error.message,
            retryable=error.retryable,
            context=dict(error.context),
        )

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> JobError:
        return cls.from_error(OrchestratorError.from_payload(payload))

    def to_error(self) -> OrchestratorError:
        return OrchestratorError(
            self.kind,
            self.message,
            retryable=self.retryable,
            code=self.code,
            context=self.context,
        )

    def to_payload(self) -> dict[str, Any]:
        return self.to_error().to_payload()


@dataclass(slots=True)
class JobCreate:
    """Input payload for creating a job record."""

    job_type: JobType
    user_id: str
    payload: dict[str, Any]
    priority: int
    max_retries: int
    timeout_seconds: int
    resource_id: str | None = None
    job_id: str | None = None


@dataclass(slots=True)
class JobView:
    """Readable job view for services, workers and the CLI."""

    job_id: str
    user_id: str
    resource_id: str | None
    job_type: JobType
    status: JobStatus
    priority: int
    progress: int
    progress_step: str | None
    attempt: int
    max_retries: int
    timeout_seconds: int
    payload: dict[str, Any]
    result: dict[str, Any] | None
    error: JobError | None
    worker_id: str | None
    run_after: datetime
    queued_at: datetime | None
    started_at: datetime | None
    heartbeat_at: datetime | None
    completed_at: datetime | None
    created_at: datetime
    updated_at: datetime

    @property
    def retries_used(self) -> int:
        return self.attempt - 1

    @property
    def retries_left(self) -> int:
        return max(0, self.max_retries - self.retries_used)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


@dataclass(slots=True)
class JobEventView:
    """Job event entry for the audit trail."""

    event_id: int
    job_id: str
    event_type: str
    status_from: JobStatus | None
    status_to: JobStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class JobDetails:
    """Job with its event stream."""

    job: JobView
    events: list[JobEventView]


@dataclass(slots=True)
class LifecycleEvent:
    """Notification handed to lifecycle listeners after a committed change."""

    name: JobEventName
    job: JobView
    status_from: JobStatus | None
    occurred_at: datetime
    details: dict[str, Any] = field(default_factory=dict)
