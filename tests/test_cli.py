from __future__ import annotations

import json
import re
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner, Result

from cv_orchestrator import __version__
from cv_orchestrator.main import cv_orchestrator

pytestmark = [
    allure.epic("Operations"),
    allure.feature("CLI"),
]

EMAIL_PAYLOAD = json.dumps({"to": "ada@example.com", "template": "cv_ready"})


@pytest.fixture(autouse=True)
def _local_engine(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CV_ORCH_AI_PROVIDERS", "echo")
    monkeypatch.setenv("CV_ORCH_TICK_INTERVAL_SECONDS", "0")


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "cli.db"


def _invoke(db_path: Path, *args: str) -> Result:
    group, command, *rest = args
    return CliRunner().invoke(cv_orchestrator, [group, command, "--db-path", str(db_path), *rest])


def _submit(db_path: Path, job_type: str, payload: str, *extra: str) -> str:
    result = _invoke(
        db_path,
        "jobs",
        "submit",
        "--type",
        job_type,
        "--user-id",
        "u1",
        "--payload",
        payload,
        *extra,
    )
    assert result.exit_code == 0, result.output
    match = re.search(r"job_id=(\S+)", result.output)
    assert match is not None
    return match.group(1)


def test_version_option() -> None:
    result = CliRunner().invoke(cv_orchestrator, ["--version"])

    assert result.exit_code == 0
    assert __version__ in result.output


def test_submit_run_and_inspect(db_path: Path) -> None:
    job_id = _submit(db_path, "email_notification", EMAIL_PAYLOAD, "--priority", "7")

    pending = _invoke(db_path, "jobs", "get", "--job-id", job_id)
    assert pending.exit_code == 0, pending.output
    assert "Status: pending" in pending.output
    assert "Priority: 7" in pending.output

    worker = _invoke(db_path, "worker", "run", "--once")
    assert worker.exit_code == 0, worker.output
    assert "Worker summary: ticks=1 started=1 succeeded=1 failed=0" in worker.output
    assert "email_notification: ok=1" in worker.output
    assert (
        "Handlers: ats_analysis,document_export,email_notification,enhancement,generation,"
        "parsing,webhook_delivery"
    ) in worker.output

    done = _invoke(db_path, "jobs", "get", "--job-id", job_id, "--user-id", "u1")
    assert "Status: completed" in done.output
    assert "Progress: 100%" in done.output
    assert '"accepted": true' in done.output

    logs = _invoke(db_path, "jobs", "logs", "--job-id", job_id)
    assert logs.exit_code == 0, logs.output
    assert "job.created -->pending" in logs.output
    assert "job.queued pending->queued" in logs.output
    assert "job.completed processing->completed" in logs.output

    listed = _invoke(db_path, "jobs", "list", "--user-id", "u1", "--status", "completed")
    assert job_id in listed.output
    assert "attempt=1/4" in listed.output

    metrics = CliRunner().invoke(cv_orchestrator, ["metrics", "--db-path", str(db_path)])
    assert metrics.exit_code == 0, metrics.output
    assert "Jobs by status: completed=1" in metrics.output


def test_list_without_jobs(db_path: Path) -> None:
    result = _invoke(db_path, "jobs", "list")

    assert result.exit_code == 0
    assert "No jobs found." in result.output


def test_cancel_pending_job(db_path: Path) -> None:
    job_id = _submit(db_path, "document_export", '{"format": "pdf"}')

    cancelled = _invoke(db_path, "jobs", "cancel", "--job-id", job_id)

    assert cancelled.exit_code == 0, cancelled.output
    assert f"Job cancelled: job_id={job_id} status=cancelled" in cancelled.output

    again = _invoke(db_path, "jobs", "cancel", "--job-id", job_id)
    assert again.exit_code != 0
    assert "ERR_2004" in again.output


def test_failed_job_can_be_retried(db_path: Path) -> None:
    job_id = _submit(db_path, "ats_analysis", '{"cv": "Ada"}')
    _invoke(db_path, "worker", "run", "--once")

    failed = _invoke(db_path, "jobs", "get", "--job-id", job_id)
    assert "Status: failed" in failed.output
    assert "Error: validation ERR_1001" in failed.output

    retried = _invoke(db_path, "jobs", "retry", "--job-id", job_id)

    assert retried.exit_code == 0, retried.output
    assert "status=retrying attempt=2/4" in retried.output


def test_retry_of_pending_job_is_rejected(db_path: Path) -> None:
    job_id = _submit(db_path, "document_export", '{"format": "pdf"}')

    result = _invoke(db_path, "jobs", "retry", "--job-id", job_id)

    assert result.exit_code != 0
    assert "invalid_transition" in result.output


def test_foreign_job_is_forbidden(db_path: Path) -> None:
    job_id = _submit(db_path, "document_export", '{"format": "pdf"}')

    result = _invoke(db_path, "jobs", "get", "--job-id", job_id, "--user-id", "mallory")

    assert result.exit_code != 0
    assert "ERR_3001" in result.output


def test_submit_rejects_bad_payload(db_path: Path) -> None:
    result = _invoke(
        db_path,
        "jobs",
        "submit",
        "--type",
        "parsing",
        "--user-id",
        "u1",
        "--payload",
        "{not json",
    )

    assert result.exit_code != 0
    assert "not valid JSON" in result.output


def test_submit_rejects_retry_budget_above_ceiling(db_path: Path) -> None:
    result = _invoke(
        db_path,
        "jobs",
        "submit",
        "--type",
        "parsing",
        "--user-id",
        "u1",
        "--max-retries",
        "11",
    )

    assert result.exit_code == 2  # noqa: PLR2004


def test_webhook_registration_and_deliveries(db_path: Path) -> None:
    registered = _invoke(
        db_path,
        "webhooks",
        "register",
        "--webhook-id",
        "wh-1",
        "--user-id",
        "u1",
        "--url",
        "https://hooks.example.com/cv",
        "--event",
        "job.completed",
        "--event",
        "job.failed",
        "--secret",
        "s3cret",
    )
    assert registered.exit_code == 0, registered.output
    assert "Webhook saved: webhook_id=wh-1 status=active" in registered.output
    assert "events=job.completed,job.failed" in registered.output

    empty = _invoke(db_path, "webhooks", "deliveries", "--webhook-id", "wh-1")
    assert "No deliveries for webhook wh-1." in empty.output

    job_id = _submit(db_path, "email_notification", EMAIL_PAYLOAD)
    _invoke(db_path, "worker", "run", "--once")

    history = _invoke(db_path, "webhooks", "deliveries", "--webhook-id", "wh-1")
    assert history.exit_code == 0, history.output
    assert "event=job.completed status=pending attempts=0" in history.output
    assert f"job_id={job_id}" in history.output
