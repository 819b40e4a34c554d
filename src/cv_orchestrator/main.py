"""CLI entrypoint for cv-orchestrator."""

import logging
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import rich_click as click

from cv_orchestrator import __version__
from cv_orchestrator.controllers import (
    JobInspectCommand,
    JobListCommand,
    JobsCliController,
    JobSubmitCommand,
    MetricsCommand,
    WebhookDeliveriesCommand,
    WebhookRegisterCommand,
    WorkerCommand,
)
from cv_orchestrator.errors import OrchestratorError
from cv_orchestrator.jobs.models import JobStatus, JobType

click.rich_click.USE_MARKDOWN = True
CONTROLLER = JobsCliController()
CommandT = TypeVar("CommandT")


@click.group()
@click.version_option(version=__version__, prog_name="cv-orchestrator")
@click.option(
    "--log-level",
    type=click.Choice(["debug", "info", "warning", "error"], case_sensitive=False),
    default="warning",
    show_default=True,
    help="Log level for engine diagnostics.",
)
def cv_orchestrator(log_level: str) -> None:
    """CV processing job orchestrator."""

    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cv_orchestrator.group()
def jobs() -> None:
    """Job submission and inspection commands."""


@jobs.command("submit")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--type",
    "job_type",
    type=click.Choice([job_type.value for job_type in JobType], case_sensitive=False),
    required=True,
    help="Job type.",
)
@click.option("--user-id", required=True, help="Owner of the job.")
@click.option(
    "--payload",
    "payload_json",
    default="{}",
    show_default=True,
    help="Job payload as a JSON object.",
)
@click.option("--priority", type=int, default=None, help="Priority; higher runs sooner.")
@click.option(
    "--max-retries",
    type=click.IntRange(min=0, max=10),
    default=None,
    help="Retry budget; defaults to the configured policy.",
)
@click.option("--resource-id", default=None, help="Optional id of the resource the job acts on.")
def jobs_submit(  # noqa: PLR0913
    db_path: Path | None,
    job_type: str,
    user_id: str,
    payload_json: str,
    priority: int | None,
    max_retries: int | None,
    resource_id: str | None,
) -> None:
    """Submit a job; it starts as `pending` until a worker admits it."""

    _emit(
        CONTROLLER.submit,
        JobSubmitCommand(
            db_path=db_path,
            job_type=job_type.lower(),
            payload_json=payload_json,
            user_id=user_id,
            priority=priority,
            max_retries=max_retries,
            resource_id=resource_id,
        ),
    )


@jobs.command("get")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--job-id", required=True, help="Job id.")
@click.option("--user-id", default=None, help="Require the job to belong to this user.")
def jobs_get(db_path: Path | None, job_id: str, user_id: str | None) -> None:
    """Show one job with its result or error."""

    _emit(CONTROLLER.get, JobInspectCommand(db_path=db_path, job_id=job_id, user_id=user_id))


@jobs.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--user-id", default=None, help="Optional owner filter.")
@click.option(
    "--status",
    type=click.Choice([status.value for status in JobStatus], case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.option(
    "--type",
    "job_type",
    type=click.Choice([job_type.value for job_type in JobType], case_sensitive=False),
    default=None,
    help="Optional job type filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max jobs to print.",
)
def jobs_list(
    db_path: Path | None,
    user_id: str | None,
    status: str | None,
    job_type: str | None,
    limit: int,
) -> None:
    """List recent jobs, newest first."""

    _emit(
        CONTROLLER.list_jobs,
        JobListCommand(
            db_path=db_path,
            user_id=user_id,
            status=status.lower() if status else None,
            job_type=job_type.lower() if job_type else None,
            limit=limit,
        ),
    )


@jobs.command("logs")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--job-id", required=True, help="Job id.")
@click.option("--user-id", default=None, help="Require the job to belong to this user.")
def jobs_logs(db_path: Path | None, job_id: str, user_id: str | None) -> None:
    """Print the lifecycle event history of one job."""

    _emit(CONTROLLER.logs, JobInspectCommand(db_path=db_path, job_id=job_id, user_id=user_id))


@jobs.command("cancel")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--job-id", required=True, help="Job id.")
@click.option("--user-id", default=None, help="Require the job to belong to this user.")
def jobs_cancel(db_path: Path | None, job_id: str, user_id: str | None) -> None:
    """Cancel a job that has not finished yet."""

    _emit(CONTROLLER.cancel, JobInspectCommand(db_path=db_path, job_id=job_id, user_id=user_id))


@jobs.command("retry")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--job-id", required=True, help="Job id.")
@click.option("--user-id", default=None, help="Require the job to belong to this user.")
def jobs_retry(db_path: Path | None, job_id: str, user_id: str | None) -> None:
    """Re-run a failed job that still has retries left."""

    _emit(CONTROLLER.retry, JobInspectCommand(db_path=db_path, job_id=job_id, user_id=user_id))


@cv_orchestrator.group()
def worker() -> None:
    """Worker pool commands."""


@worker.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--once/--loop",
    default=False,
    show_default=True,
    help="Run a single scheduling tick or keep ticking.",
)
@click.option(
    "--max-ticks",
    type=click.IntRange(min=1),
    default=None,
    help="Optional cap for scheduling ticks in loop mode.",
)
@click.option(
    "--until-idle",
    is_flag=True,
    default=False,
    help="Stop once no pending, queued, processing or retrying jobs remain.",
)
def worker_run(
    db_path: Path | None,
    once: bool,
    max_ticks: int | None,
    until_idle: bool,
) -> None:
    """Run the scheduler and worker pool; SIGINT/SIGTERM stop it gracefully."""

    _emit(
        CONTROLLER.run_worker,
        WorkerCommand(
            db_path=db_path,
            once=once,
            max_ticks=max_ticks,
            until_idle=until_idle,
        ),
    )


@cv_orchestrator.group()
def webhooks() -> None:
    """Webhook subscription and delivery commands."""


@webhooks.command("register")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--webhook-id", required=True, help="Webhook id; an existing one is updated.")
@click.option("--user-id", required=True, help="Owner of the webhook.")
@click.option("--url", required=True, help="Target URL (https unless insecure is allowed).")
@click.option(
    "--event",
    "events",
    multiple=True,
    required=True,
    help="Subscribed event, for example job.completed or *. Can be repeated.",
)
@click.option("--secret", required=True, help="Shared signing secret.")
@click.option("--inactive", is_flag=True, default=False, help="Store the webhook as inactive.")
def webhooks_register(  # noqa: PLR0913
    db_path: Path | None,
    webhook_id: str,
    user_id: str,
    url: str,
    events: tuple[str, ...],
    secret: str,
    inactive: bool,
) -> None:
    """Create or update a webhook subscription."""

    _emit(
        CONTROLLER.register_webhook,
        WebhookRegisterCommand(
            db_path=db_path,
            webhook_id=webhook_id,
            user_id=user_id,
            url=url,
            events=events,
            secret=secret,
            inactive=inactive,
        ),
    )


@webhooks.command("deliveries")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--webhook-id", required=True, help="Webhook id.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max deliveries to print.",
)
def webhooks_deliveries(db_path: Path | None, webhook_id: str, limit: int) -> None:
    """Show delivery history with per-attempt outcomes."""

    _emit(
        CONTROLLER.deliveries,
        WebhookDeliveriesCommand(db_path=db_path, webhook_id=webhook_id, limit=limit),
    )


@cv_orchestrator.command("metrics")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--reset-validation",
    is_flag=True,
    default=False,
    help="Clear the schema-validation failure counters first.",
)
def metrics(db_path: Path | None, reset_validation: bool) -> None:
    """Show job counts by status and in-process metrics."""

    _emit(
        CONTROLLER.metrics,
        MetricsCommand(db_path=db_path, reset_validation=reset_validation),
    )


def _emit(action: Callable[[CommandT], list[str]], command: CommandT) -> None:
    try:
        lines = action(command)
    except OrchestratorError as error:
        raise click.ClickException(f"{error.code} {error.kind.value}: {error.message}") from error
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    cv_orchestrator()
