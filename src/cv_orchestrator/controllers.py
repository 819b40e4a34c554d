"""Controllers for job, worker, webhook and metrics CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from cv_orchestrator.config import Settings
from cv_orchestrator.jobs.models import JobStatus, JobType, JobView
from cv_orchestrator.metrics import render_metrics_lines
from cv_orchestrator.runtime import Runtime, build_runtime
from cv_orchestrator.storage.common import utc_now
from cv_orchestrator.webhooks.models import WebhookStatus, WebhookUpsert


@dataclass(slots=True)
class JobSubmitCommand:
    """CLI input for job submission."""

    db_path: Path | None
    job_type: str
    payload_json: str
    user_id: str
    priority: int | None
    max_retries: int | None
    resource_id: str | None


@dataclass(slots=True)
class JobInspectCommand:
    """CLI input for single-job commands (get, logs, cancel, retry)."""

    db_path: Path | None
    job_id: str
    user_id: str | None


@dataclass(slots=True)
class JobListCommand:
    """CLI input for job listing."""

    db_path: Path | None
    user_id: str | None
    status: str | None
    job_type: str | None
    limit: int


@dataclass(slots=True)
class WorkerCommand:
    """CLI input for worker execution."""

    db_path: Path | None
    once: bool
    max_ticks: int | None
    until_idle: bool


@dataclass(slots=True)
class WebhookRegisterCommand:
    """CLI input for registering a webhook subscription."""

    db_path: Path | None
    webhook_id: str
    user_id: str
    url: str
    events: tuple[str, ...]
    secret: str
    inactive: bool


@dataclass(slots=True)
class WebhookDeliveriesCommand:
    """CLI input for delivery history."""

    db_path: Path | None
    webhook_id: str
    limit: int


@dataclass(slots=True)
class MetricsCommand:
    """CLI input for metrics inspection."""

    db_path: Path | None
    reset_validation: bool


class JobsCliController:
    """Coordinates submission, inspection, worker and webhook CLI operations."""

    def submit(self, command: JobSubmitCommand) -> list[str]:
        try:
            payload = json.loads(command.payload_json)
        except json.JSONDecodeError as error:
            raise ValueError(f"--payload is not valid JSON: {error}") from error

        with _runtime(command.db_path) as runtime:
            job_id = runtime.service.submit(
                command.job_type,
                payload,
                user_id=command.user_id,
                priority=command.priority,
                max_retries=command.max_retries,
                resource_id=command.resource_id,
            )
            job = runtime.service.get(job_id)

        return [
            f"Job submitted: job_id={job.job_id} type={job.job_type.value} "
            f"status={job.status.value} priority={job.priority} max_retries={job.max_retries}",
        ]

    def get(self, command: JobInspectCommand) -> list[str]:
        with _runtime(command.db_path) as runtime:
            job = runtime.service.get(command.job_id, user_id=command.user_id)
        return _job_detail_lines(job)

    def list_jobs(self, command: JobListCommand) -> list[str]:
        with _runtime(command.db_path) as runtime:
            jobs = runtime.service.list_jobs(
                user_id=command.user_id,
                status=JobStatus(command.status) if command.status else None,
                job_type=JobType(command.job_type) if command.job_type else None,
                limit=command.limit,
            )
        if not jobs:
            return ["No jobs found."]
        return [
            f"{job.job_id} type={job.job_type.value} status={job.status.value} "
            f"priority={job.priority} attempt={job.attempt}/{job.max_retries + 1} "
            f"progress={job.progress}% user={job.user_id} created_at={job.created_at.isoformat()}"
            for job in jobs
        ]

    def logs(self, command: JobInspectCommand) -> list[str]:
        with _runtime(command.db_path) as runtime:
            events = runtime.service.logs(command.job_id, user_id=command.user_id)
        if not events:
            return [f"No events for job {command.job_id}."]
        lines: list[str] = []
        for event in events:
            transition = ""
            if event.status_to is not None:
                source = event.status_from.value if event.status_from else "-"
                transition = f" {source}->{event.status_to.value}"
            details = f" {json.dumps(event.details, sort_keys=True)}" if event.details else ""
            lines.append(
                f"{event.created_at.isoformat()} {event.event_type}{transition}{details}",
            )
        return lines

    def cancel(self, command: JobInspectCommand) -> list[str]:
        with _runtime(command.db_path) as runtime:
            job = runtime.service.cancel(command.job_id, user_id=command.user_id)
        return [f"Job cancelled: job_id={job.job_id} status={job.status.value}"]

    def retry(self, command: JobInspectCommand) -> list[str]:
        with _runtime(command.db_path) as runtime:
            job = runtime.service.retry(command.job_id, user_id=command.user_id)
        return [
            f"Job scheduled for retry: job_id={job.job_id} status={job.status.value} "
            f"attempt={job.attempt}/{job.max_retries + 1}",
        ]

    def run_worker(self, command: WorkerCommand) -> list[str]:
        with _runtime(command.db_path) as runtime:
            summary = runtime.scheduler.run(
                max_ticks=1 if command.once else command.max_ticks,
                until_idle=command.until_idle,
            )
            metrics_lines = render_metrics_lines(runtime.metrics.snapshot())
            handled = ",".join(job_type.value for job_type in runtime.handlers.registered_types())

        return [
            f"Handlers: {handled}",
            "Worker summary: "
            f"ticks={summary.ticks} started={summary.started} succeeded={summary.succeeded} "
            f"failed={summary.failed} retried={summary.retried} timed_out={summary.timed_out} "
            f"promoted={summary.promoted} deferred={summary.deferred} "
            f"discarded={summary.discarded}",
            *metrics_lines,
        ]

    def register_webhook(self, command: WebhookRegisterCommand) -> list[str]:
        with _runtime(command.db_path) as runtime:
            webhook = runtime.webhooks.upsert_webhook(
                WebhookUpsert(
                    webhook_id=command.webhook_id,
                    user_id=command.user_id,
                    url=command.url,
                    events=list(command.events),
                    secret=command.secret,
                    status=WebhookStatus.INACTIVE if command.inactive else WebhookStatus.ACTIVE,
                ),
                now=utc_now(),
            )
        return [
            f"Webhook saved: webhook_id={webhook.webhook_id} status={webhook.status.value} "
            f"events={','.join(webhook.events)} url={webhook.url}",
        ]

    def deliveries(self, command: WebhookDeliveriesCommand) -> list[str]:
        with _runtime(command.db_path) as runtime:
            deliveries = runtime.webhooks.list_deliveries(
                webhook_id=command.webhook_id,
                limit=command.limit,
            )
        if not deliveries:
            return [f"No deliveries for webhook {command.webhook_id}."]
        lines: list[str] = []
        for delivery in deliveries:
            lines.append(
                f"{delivery.delivery_id} event={delivery.event_type} "
                f"status={delivery.status.value} attempts={delivery.attempt_count} "
                f"last_status_code={delivery.last_status_code} job_id={delivery.job_id}",
            )
            lines.extend(
                f"  #{attempt.attempt_no} success={attempt.success} "
                f"status_code={attempt.status_code} duration_ms={attempt.duration_ms} "
                f"error={attempt.error or '-'}"
                for attempt in delivery.attempts
            )
        return lines

    def metrics(self, command: MetricsCommand) -> list[str]:
        """Metrics live in process memory; a fresh process reports only what it ran."""

        with _runtime(command.db_path) as runtime:
            if command.reset_validation:
                runtime.metrics.reset_validation_failures()
            lines = render_metrics_lines(runtime.metrics.snapshot())
            counts = runtime.jobs.count_by_status()
        lines.append(
            "Jobs by status: "
            + (", ".join(f"{status}={count}" for status, count in counts.items()) or "none"),
        )
        return lines


def _job_detail_lines(job: JobView) -> list[str]:
    lines = [
        f"Job: {job.job_id}",
        f"Type: {job.job_type.value}",
        f"User: {job.user_id}",
        f"Status: {job.status.value}",
        f"Priority: {job.priority}",
        f"Progress: {job.progress}% ({job.progress_step or '-'})",
        f"Attempt: {job.attempt}/{job.max_retries + 1}",
        f"Run after: {job.run_after.isoformat()}",
        f"Created: {job.created_at.isoformat()}",
    ]
    if job.resource_id:
        lines.append(f"Resource: {job.resource_id}")
    if job.completed_at is not None:
        lines.append(f"Completed: {job.completed_at.isoformat()}")
    if job.result is not None:
        lines.append(f"Result: {_compact(job.result)}")
    if job.error is not None:
        lines.append(f"Error: {job.error.kind.value} {job.error.code} {job.error.message}")
    return lines


def _compact(value: Any, *, limit: int = 400) -> str:
    text = json.dumps(value, sort_keys=True, ensure_ascii=False)
    if len(text) <= limit:
        return text
    return text[: limit - 3] + "..."


@contextmanager
def _runtime(db_path: Path | None) -> Iterator[Runtime]:
    runtime = build_runtime(Settings.from_env(db_path=db_path))
    try:
        yield runtime
    finally:
        runtime.close()
