from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import allure
import pytest

from cv_orchestrator.errors import ErrorKind, OrchestratorError
from cv_orchestrator.jobs.models import (
    JobCreate,
    JobEventName,
    JobStatus,
    JobType,
    LifecycleEvent,
)
from cv_orchestrator.jobs.repository import JobRepository
from cv_orchestrator.jobs.state_machine import JobStateMachine, can_transition
from conftest import FakeClock

pytestmark = [
    allure.epic("Job Lifecycle"),
    allure.feature("State Machine"),
]

ALLOWED = {
    JobStatus.PENDING: {JobStatus.QUEUED, JobStatus.CANCELLED},
    JobStatus.QUEUED: {JobStatus.PROCESSING, JobStatus.CANCELLED, JobStatus.TIMEOUT},
    JobStatus.PROCESSING: {
        JobStatus.COMPLETED,
        JobStatus.FAILED,
        JobStatus.CANCELLED,
        JobStatus.TIMEOUT,
    },
    JobStatus.FAILED: {JobStatus.RETRYING, JobStatus.CANCELLED},
    JobStatus.RETRYING: {JobStatus.QUEUED, JobStatus.FAILED, JobStatus.CANCELLED},
    JobStatus.TIMEOUT: {JobStatus.RETRYING, JobStatus.FAILED},
    JobStatus.COMPLETED: set(),
    JobStatus.CANCELLED: set(),
}


@pytest.fixture()
def machine(tmp_path: Path) -> Iterator[JobStateMachine]:
    repository = JobRepository(tmp_path / "state.db")
    repository.init_schema()
    yield JobStateMachine(repository, clock=FakeClock())
    repository.close()


def _create(machine: JobStateMachine, *, max_retries: int = 2) -> str:
    return machine.create(
        JobCreate(
            job_type=JobType.PARSING,
            user_id="user-1",
            payload={"text": "cv"},
            priority=5,
            max_retries=max_retries,
            timeout_seconds=300,
        ),
    ).job_id


def _drive(machine: JobStateMachine, status: JobStatus) -> str:
    job_id = _create(machine)
    error = OrchestratorError(ErrorKind.AI_SERVICE, "boom")
    if status == JobStatus.PENDING:
        return job_id
    if status == JobStatus.CANCELLED:
        machine.cancel(job_id)
        return job_id
    machine.enqueue(job_id)
    if status == JobStatus.QUEUED:
        return job_id
    machine.start(job_id, worker_id="w1")
    if status == JobStatus.COMPLETED:
        machine.complete(job_id, {"ok": True})
    elif status == JobStatus.FAILED:
        machine.fail(job_id, error)
    elif status == JobStatus.RETRYING:
        machine.fail(job_id, error)
        machine.schedule_retry(job_id, run_after=machine._clock(), delay_seconds=0)
    elif status == JobStatus.TIMEOUT:
        machine.time_out(job_id, error, expected=JobStatus.PROCESSING)
    return job_id


def test_transition_table_matches_lifecycle() -> None:
    for source in JobStatus:
        for target in JobStatus:
            assert can_transition(source, target) == (target in ALLOWED[source]), (source, target)


@pytest.mark.parametrize("source", list(JobStatus))
def test_every_transition_is_applied_or_rejected_without_change(
    machine: JobStateMachine,
    source: JobStatus,
) -> None:
    for target in JobStatus:
        job_id = _drive(machine, source)
        before = machine.repository.get_job(job_id)
        assert before is not None
        assert before.status == source

        if target in ALLOWED[source]:
            after = machine.transition(job_id, target)
            assert after.status == target
            continue

        with pytest.raises(OrchestratorError) as raised:
            machine.transition(job_id, target)
        assert raised.value.kind == ErrorKind.INVALID_TRANSITION
        assert raised.value.context["from"] == source.value
        assert machine.repository.get_job(job_id) == before


def test_happy_path_sets_result_and_clears_error(machine: JobStateMachine) -> None:
    job_id = _create(machine)
    machine.enqueue(job_id)
    started = machine.start(job_id, worker_id="w1")
    assert started.status == JobStatus.PROCESSING
    assert started.worker_id == "w1"
    assert started.started_at is not None

    completed = machine.complete(job_id, {"score": 91})

    assert completed.status == JobStatus.COMPLETED
    assert completed.result == {"score": 91}
    assert completed.error is None
    assert completed.progress == 100
    assert completed.completed_at is not None


def test_failure_sets_error_and_no_result(machine: JobStateMachine) -> None:
    job_id = _drive(machine, JobStatus.FAILED)
    job = machine.repository.get_job(job_id)

    assert job is not None
    assert job.result is None
    assert job.error is not None
    assert job.error.kind == ErrorKind.AI_SERVICE
    assert job.error.code == "ERR_6001"


def test_expected_status_mismatch_is_rejected(machine: JobStateMachine) -> None:
    job_id = _drive(machine, JobStatus.QUEUED)

    with pytest.raises(OrchestratorError) as raised:
        machine.complete(job_id, {"late": True})

    assert raised.value.kind == ErrorKind.INVALID_TRANSITION
    job = machine.repository.get_job(job_id)
    assert job is not None
    assert job.status == JobStatus.QUEUED
    assert job.result is None


def test_second_claim_of_same_job_fails(machine: JobStateMachine) -> None:
    job_id = _drive(machine, JobStatus.QUEUED)
    machine.start(job_id, worker_id="w1")

    with pytest.raises(OrchestratorError) as raised:
        machine.start(job_id, worker_id="w2")

    assert raised.value.kind == ErrorKind.INVALID_TRANSITION
    job = machine.repository.get_job(job_id)
    assert job is not None
    assert job.worker_id == "w1"


def test_schedule_retry_bumps_attempt_until_budget_is_spent(machine: JobStateMachine) -> None:
    job_id = _create(machine, max_retries=1)
    error = OrchestratorError(ErrorKind.AI_SERVICE, "boom")
    machine.enqueue(job_id)
    machine.start(job_id, worker_id="w1")
    machine.fail(job_id, error)

    retrying = machine.schedule_retry(job_id, run_after=machine._clock(), delay_seconds=0)
    assert retrying.attempt == 2
    assert retrying.status == JobStatus.RETRYING

    machine.enqueue(job_id, expected=JobStatus.RETRYING)
    machine.start(job_id, worker_id="w1")
    machine.fail(job_id, error)
    with pytest.raises(OrchestratorError) as raised:
        machine.schedule_retry(job_id, run_after=machine._clock(), delay_seconds=0)

    assert raised.value.code == "ERR_2005"
    job = machine.repository.get_job(job_id)
    assert job is not None
    assert job.status == JobStatus.FAILED
    assert job.attempt == 2


def test_progress_only_moves_forward_while_processing(machine: JobStateMachine) -> None:
    job_id = _create(machine)
    assert machine.report_progress(job_id, 10) is False

    machine.enqueue(job_id)
    machine.start(job_id, worker_id="w1")
    assert machine.report_progress(job_id, 40, step="prompt_built") is True
    assert machine.report_progress(job_id, 20, step="input_validated") is False
    assert machine.report_progress(job_id, 150) is True

    job = machine.repository.get_job(job_id)
    assert job is not None
    assert job.progress == 100
    assert job.heartbeat_at is not None


def test_cancel_terminal_job_raises(machine: JobStateMachine) -> None:
    job_id = _drive(machine, JobStatus.COMPLETED)

    with pytest.raises(OrchestratorError) as raised:
        machine.cancel(job_id)

    assert raised.value.kind == ErrorKind.INVALID_TRANSITION


def test_unknown_job_raises_not_found(machine: JobStateMachine) -> None:
    with pytest.raises(OrchestratorError) as raised:
        machine.enqueue("parsing:none:0:missing")

    assert raised.value.kind == ErrorKind.NOT_FOUND


def test_listeners_see_committed_transitions_in_order(machine: JobStateMachine) -> None:
    seen: list[LifecycleEvent] = []

    def _listener(event: LifecycleEvent) -> None:
        stored = machine.repository.get_job(event.job.job_id)
        assert stored is not None
        assert stored.status == event.job.status
        seen.append(event)

    machine.subscribe(_listener)
    machine.subscribe(_broken_listener)
    job_id = _drive(machine, JobStatus.COMPLETED)

    assert [event.name for event in seen] == [
        JobEventName.CREATED,
        JobEventName.QUEUED,
        JobEventName.STARTED,
        JobEventName.COMPLETED,
    ]
    assert seen[-1].status_from == JobStatus.PROCESSING
    details = machine.repository.get_job_details(job_id)
    assert details is not None
    assert [event.event_type for event in details.events] == [
        "job.created",
        "job.queued",
        "job.started",
        "job.completed",
    ]


def _broken_listener(_event: LifecycleEvent) -> None:
    raise RuntimeError("listener bug")
