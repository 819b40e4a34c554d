"""Webhook subscription and delivery models."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from cv_orchestrator.jobs.models import JobStatus, JobType


class WebhookStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"


class DeliveryStatus(str, Enum):
    """Outcome of a delivery across all of its attempts."""

    PENDING = "pending"
    RETRYING = "retrying"
    SUCCESS = "success"
    EXHAUSTED = "exhausted"
    EXPIRED = "expired"
    SKIPPED = "skipped"


SETTLED_DELIVERY_STATUSES = frozenset(
    {
        DeliveryStatus.SUCCESS,
        DeliveryStatus.EXHAUSTED,
        DeliveryStatus.EXPIRED,
        DeliveryStatus.SKIPPED,
    },
)

WILDCARD_EVENT = "*"

JOB_EVENT_BY_STATUS: dict[JobStatus, str] = {
    JobStatus.COMPLETED: "job.completed",
    JobStatus.FAILED: "job.failed",
    JobStatus.CANCELLED: "job.cancelled",
}

# Per-type aliases subscribers can use instead of the generic job events.
_TYPE_EVENT_PREFIX: dict[JobType, str] = {
    JobType.PARSING: "parsing",
    JobType.GENERATION: "generation",
    JobType.ENHANCEMENT: "enhancement",
    JobType.ATS_ANALYSIS: "ats",
}


def events_for_job(job_type: JobType, status: JobStatus) -> list[str]:
    """Event names a settled job matches, generic first."""

    generic = JOB_EVENT_BY_STATUS.get(status)
    if generic is None:
        return []
    names = [generic]
    prefix = _TYPE_EVENT_PREFIX.get(job_type)
    if prefix is not None and status in (JobStatus.COMPLETED, JobStatus.FAILED):
        names.append(f"{prefix}.{status.value}")
    return names


@dataclass(slots=True)
class WebhookUpsert:
    """Subscription written by the external subscription manager."""

    webhook_id: str
    user_id: str
    url: str
    events: list[str]
    secret: str
    status: WebhookStatus = WebhookStatus.ACTIVE
    description: str | None = None


@dataclass(slots=True)
class WebhookView:
    webhook_id: str
    user_id: str
    url: str
    events: list[str]
    secret: str = field(repr=False)
    status: WebhookStatus
    description: str | None
    created_at: datetime
    updated_at: datetime

    @property
    def is_active(self) -> bool:
        return self.status == WebhookStatus.ACTIVE

    def subscribes_to(self, event: str) -> bool:
        return WILDCARD_EVENT in self.events or event in self.events


@dataclass(slots=True)
class DeliveryAttemptView:
    attempt_no: int
    success: bool
    status_code: int | None
    error: str | None
    duration_ms: int
    created_at: datetime


@dataclass(slots=True)
class DeliveryView:
    """One event occurrence for one webhook, with its attempt history."""

    delivery_id: str
    webhook_id: str
    job_id: str | None
    event_type: str
    occurrence_key: str
    payload: dict[str, Any]
    body: str
    signature: str
    timestamp_ms: int
    status: DeliveryStatus
    attempt_count: int
    last_status_code: int | None
    last_error: str | None
    delivery_job_id: str | None
    delivered_at: datetime | None
    created_at: datetime
    updated_at: datetime
    attempts: list[DeliveryAttemptView] = field(default_factory=list)
