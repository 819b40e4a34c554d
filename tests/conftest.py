"""Shared test fixtures."""

from __future__ import annotations

import threading
import time
from collections import deque
from collections.abc import Callable, Iterator
from dataclasses import replace
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest

from cv_orchestrator.config import (
    ProviderSettings,
    RetrySettings,
    SchedulerSettings,
    Settings,
    WebhookSettings,
)
from cv_orchestrator.jobs.models import JobStatus, JobView
from cv_orchestrator.providers.base import ProviderDescriptor, ProviderRequest
from cv_orchestrator.runtime import Runtime, build_runtime

START = datetime(2026, 10, 19, 9, 0, tzinfo=UTC)
VALID_PARSED_CV = (
    '{"personal_info": {"name": "Ada Lovelace", "email": "ada@example.com"},'
    ' "skills": ["python", "math"]}'
)


class FakeClock:
    """Manually advanced wall clock; ``monotonic`` follows the same timeline."""

    def __init__(self, start: datetime = START) -> None:
        self.now = start
        self._lock = threading.Lock()

    def __call__(self) -> datetime:
        with self._lock:
            return self.now

    def advance(self, seconds: float) -> datetime:
        with self._lock:
            self.now += timedelta(seconds=seconds)
            return self.now

    def monotonic(self) -> float:
        with self._lock:
            return (self.now - START).total_seconds()


class ScriptedProvider:
    """Provider double that replays queued outcomes (text, exception or callable)."""

    def __init__(self, name: str, outcomes: list[Any] | None = None, default: Any = None) -> None:
        self.name = name
        self._outcomes: deque[Any] = deque(outcomes or [])
        self.default = VALID_PARSED_CV if default is None else default
        self.requests: list[ProviderRequest] = []
        self.closed = False

    def push(self, *outcomes: Any) -> None:
        self._outcomes.extend(outcomes)

    def generate(self, request: ProviderRequest) -> str:
        self.requests.append(request)
        outcome = self._outcomes.popleft() if self._outcomes else self.default
        if isinstance(outcome, BaseException):
            raise outcome
        if callable(outcome):
            return outcome(request)
        return outcome

    def close(self) -> None:
        self.closed = True


def descriptor(name: str, *, position: int = 0, timeout: float = 5.0) -> ProviderDescriptor:
    return ProviderDescriptor(
        name=name,
        model=f"{name}-model",
        timeout_seconds=timeout,
        fallback_position=position,
        base_url="",
    )


def make_settings(db_path: Path, **overrides: Any) -> Settings:
    """Deterministic settings: no jitter, no tick sleep, two scripted providers."""

    settings = Settings(
        db_path=db_path,
        scheduler=SchedulerSettings(worker_pool_size=2, tick_interval_seconds=0.0),
        retry=RetrySettings(max_retries=3, base_delay_seconds=30.0, jitter_ratio=0.0),
        providers=ProviderSettings(
            descriptors=(descriptor("primary", position=0), descriptor("backup", position=1)),
            default_provider="primary",
        ),
        webhooks=WebhookSettings(max_attempts=3, base_delay_seconds=1.0),
    )
    return replace(settings, **overrides)


def wait_for_status(
    runtime: Runtime,
    job_id: str,
    statuses: set[JobStatus],
    *,
    timeout: float = 5.0,
) -> JobView:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        job = runtime.service.get(job_id)
        if job.status in statuses:
            return job
        time.sleep(0.01)
    raise AssertionError(f"Job {job_id} never reached {sorted(s.value for s in statuses)}")


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def providers() -> dict[str, ScriptedProvider]:
    return {"primary": ScriptedProvider("primary"), "backup": ScriptedProvider("backup")}


@pytest.fixture()
def runtime_factory(
    tmp_path: Path,
    clock: FakeClock,
    providers: dict[str, ScriptedProvider],
) -> Iterator[Callable[..., Runtime]]:
    created: list[Runtime] = []

    def _build(settings: Settings | None = None, **kwargs: Any) -> Runtime:
        kwargs.setdefault("clock", clock)
        kwargs.setdefault("monotonic", clock.monotonic)
        kwargs.setdefault("providers", providers)
        runtime = build_runtime(settings or make_settings(tmp_path / "jobs.db"), **kwargs)
        created.append(runtime)
        return runtime

    yield _build
    for runtime in created:
        runtime.close()


@pytest.fixture()
def runtime(runtime_factory: Callable[..., Runtime]) -> Runtime:
    return runtime_factory()
