"""Admission loop, worker pool, watchdog and outcome reporting."""

from __future__ import annotations

import logging
import signal
import threading
import time
from collections.abc import Callable, Iterator
from concurrent.futures import Future, ThreadPoolExecutor, wait
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from cv_orchestrator.config import SchedulerSettings
from cv_orchestrator.errors import ErrorKind, OrchestratorError, internal_error
from cv_orchestrator.jobs.concurrency import UserConcurrencyLimiter
from cv_orchestrator.jobs.handlers import HandlerRegistry, JobCancelled, JobContext
from cv_orchestrator.jobs.models import (
    ADMITTED_STATUSES,
    JobStatus,
    JobView,
    LifecycleEvent,
)
from cv_orchestrator.jobs.retry import RetryPolicy
from cv_orchestrator.jobs.state_machine import JobStateMachine
from cv_orchestrator.metrics import MetricsCollector
from cv_orchestrator.storage.common import utc_now

TerminalListener = Callable[[JobView], None]
_OPEN_STATUSES = (
    JobStatus.PENDING,
    JobStatus.QUEUED,
    JobStatus.PROCESSING,
    JobStatus.RETRYING,
)


@dataclass(slots=True)
class TickSummary:
    """What one scheduling tick did."""

    timed_out: int = 0
    promoted: int = 0
    admitted: int = 0
    started: int = 0
    deferred: int = 0

    @property
    def is_idle(self) -> bool:
        return not (self.timed_out or self.promoted or self.admitted or self.started)


@dataclass(slots=True)
class SchedulerRunSummary:
    """Aggregate counters for CLI reporting."""

    ticks: int = 0
    started: int = 0
    timed_out: int = 0
    promoted: int = 0
    deferred: int = 0
    succeeded: int = 0
    failed: int = 0
    retried: int = 0
    discarded: int = 0

    def add_tick(self, tick: TickSummary) -> None:
        self.ticks += 1
        self.started += tick.started
        self.timed_out += tick.timed_out
        self.promoted += tick.promoted
        self.deferred += tick.deferred


class Scheduler:
    """Admits jobs by priority under pool and per-user limits, then runs them.

    A tick sweeps stuck jobs into ``timeout``, re-queues retries whose delay
    has elapsed, and claims as many admission candidates as there are free
    workers. Each claim is a slot reservation followed by state machine
    transitions, so a job can only be started once.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        state_machine: JobStateMachine,
        handlers: HandlerRegistry,
        retry_policy: RetryPolicy,
        limiter: UserConcurrencyLimiter,
        metrics: MetricsCollector,
        settings: SchedulerSettings,
        clock: Callable[[], datetime] = utc_now,
        logger: logging.Logger | None = None,
    ) -> None:
        self.state_machine = state_machine
        self.repository = state_machine.repository
        self.handlers = handlers
        self.retry_policy = retry_policy
        self.limiter = limiter
        self.metrics = metrics
        self.settings = settings
        self.worker_id = settings.worker_id
        self._clock = clock
        self._logger = logger or logging.getLogger(__name__)
        self._executor = ThreadPoolExecutor(
            max_workers=settings.worker_pool_size,
            thread_name_prefix="job-worker",
        )
        self._lock = threading.Lock()
        self._running: dict[tuple[str, int], Future[None]] = {}
        self._tokens: dict[tuple[str, int], threading.Event] = {}
        self._terminal_listeners: list[TerminalListener] = []
        self._outcomes = SchedulerRunSummary()
        self._stop = threading.Event()
        state_machine.subscribe(self._on_lifecycle)

    def add_terminal_listener(self, listener: TerminalListener) -> None:
        self._terminal_listeners.append(listener)

    def restore_counters(self) -> dict[str, int]:
        """Rebuild per-user counters from admitted jobs in the store."""

        counts = self.repository.count_by_user(
            statuses=ADMITTED_STATUSES,
            exclude_types=self.limiter.unlimited_types,
        )
        self.limiter.reset(counts)
        return counts

    @property
    def free_workers(self) -> int:
        return max(0, self.settings.worker_pool_size - self.active_count())

    def active_count(self) -> int:
        with self._lock:
            return sum(1 for future in self._running.values() if not future.done())

    def tick(self) -> TickSummary:
        now = self._clock()
        summary = TickSummary()
        self._sweep_stuck_jobs(now, summary)
        self._promote_due_retries(now, summary)
        self._admit(now, summary)
        return summary

    def run_once(self, *, timeout: float | None = None) -> TickSummary:
        """One tick, then wait for the attempts it started."""

        summary = self.tick()
        self.wait_idle(timeout=timeout)
        return summary

    def run(
        self,
        *,
        max_ticks: int | None = None,
        until_idle: bool = False,
    ) -> SchedulerRunSummary:
        """Tick until stopped, ``max_ticks`` is reached or, optionally, no work is left."""

        aggregate = SchedulerRunSummary()
        with self._signal_handlers():
            self.restore_counters()
            while not self._stop.is_set():
                aggregate.add_tick(self.tick())
                if max_ticks is not None and aggregate.ticks >= max_ticks:
                    break
                if until_idle and not self.has_open_work():
                    break
                self._stop.wait(self.settings.tick_interval_seconds)
            self.wait_idle()
        with self._lock:
            aggregate.succeeded = self._outcomes.succeeded
            aggregate.failed = self._outcomes.failed
            aggregate.retried = self._outcomes.retried
            aggregate.discarded = self._outcomes.discarded
        return aggregate

    def has_open_work(self) -> bool:
        if self.active_count():
            return True
        return bool(self.repository.list_in_status(_OPEN_STATUSES))

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until every running attempt finished; False on timeout."""

        with self._lock:
            futures = list(self._running.values())
        if not futures:
            return True
        _, not_done = wait(futures, timeout=timeout)
        return not not_done

    def request_stop(self) -> None:
        self._stop.set()

    def shutdown(self, *, wait_for_workers: bool = True) -> None:
        if not wait_for_workers:
            with self._lock:
                tokens = list(self._tokens.values())
            for token in tokens:
                token.set()
        self._executor.shutdown(wait=wait_for_workers, cancel_futures=True)

    def notify_terminal(self, job: JobView) -> None:
        """Hand a settled job (completed, final failure, cancelled) to listeners."""

        for listener in list(self._terminal_listeners):
            try:
                listener(job)
            except Exception:
                self._logger.exception("Terminal listener failed for job %s", job.job_id)

    def _sweep_stuck_jobs(self, now: datetime, summary: TickSummary) -> None:
        for job in self.repository.list_in_status(ADMITTED_STATUSES):
            error = self._stuck_error(job, now)
            if error is None:
                continue
            try:
                timed_out = self.state_machine.time_out(job.job_id, error, expected=job.status)
            except OrchestratorError as transition_error:
                if transition_error.kind != ErrorKind.INVALID_TRANSITION:
                    raise
                continue
            summary.timed_out += 1
            self._logger.warning(
                "Watchdog timed out %s job %s in %s: %s",
                job.job_type.value,
                job.job_id,
                job.status.value,
                error.message,
            )
            self.metrics.record_failure(job.job_type.value, error_kind=error.kind.value)
            self._after_failure(timed_out, error, source=JobStatus.TIMEOUT)

    def _stuck_error(self, job: JobView, now: datetime) -> OrchestratorError | None:
        if job.status == JobStatus.PROCESSING:
            last_seen = job.heartbeat_at or job.started_at or job.updated_at
            if now - last_seen <= timedelta(seconds=job.timeout_seconds):
                return None
            return OrchestratorError(
                ErrorKind.JOB_TIMEOUT,
                f"No progress for more than {job.timeout_seconds}s while processing.",
                context={"job_id": job.job_id, "worker_id": job.worker_id, "state": "processing"},
            )
        queued_since = job.queued_at or job.updated_at
        if now - queued_since <= timedelta(seconds=self.settings.queued_timeout_seconds):
            return None
        return OrchestratorError(
            ErrorKind.JOB_TIMEOUT,
            f"Queued for more than {self.settings.queued_timeout_seconds}s without a worker.",
            context={"job_id": job.job_id, "state": "queued"},
        )

    def _promote_due_retries(self, now: datetime, summary: TickSummary) -> None:
        for job in self.repository.list_due_retries(
            now=now,
            limit=self.settings.admission_batch_size,
        ):
            if not self.limiter.try_acquire(job.user_id, job.job_type):
                summary.deferred += 1
                continue
            try:
                self.state_machine.enqueue(job.job_id, expected=JobStatus.RETRYING)
            except OrchestratorError as error:
                self.limiter.release(job.user_id, job.job_type)
                if error.kind != ErrorKind.INVALID_TRANSITION:
                    raise
                continue
            summary.promoted += 1

    def _admit(self, now: datetime, summary: TickSummary) -> None:
        """Start candidates until the pool is full or no admissible job is left.

        Users found at their ceiling are excluded from the next page, so a
        backlog from one capped user cannot hide other users' jobs.
        """

        capacity = self.free_workers
        saturated = set(self.limiter.saturated_users())
        batch = self.settings.admission_batch_size
        while capacity > 0:
            candidates = self.repository.list_admission_candidates(
                now=now,
                limit=batch,
                saturated_users=saturated,
                exempt_types=self.limiter.unlimited_types,
            )
            advanced = False
            for candidate in candidates:
                if capacity <= 0:
                    return
                if candidate.status == JobStatus.PENDING and not self.limiter.try_acquire(
                    candidate.user_id,
                    candidate.job_type,
                ):
                    summary.deferred += 1
                    if candidate.user_id not in saturated:
                        saturated.add(candidate.user_id)
                        advanced = True
                    continue
                job = self._start(candidate, summary)
                if job is None:
                    continue
                self._dispatch(job)
                summary.started += 1
                capacity -= 1
                advanced = True
            if len(candidates) < batch or not advanced:
                return

    def _start(self, candidate: JobView, summary: TickSummary) -> JobView | None:
        """Queue (slot already reserved) and start ``candidate``; None if it lost a race."""

        job = candidate
        if job.status == JobStatus.PENDING:
            try:
                job = self.state_machine.enqueue(job.job_id, expected=JobStatus.PENDING)
            except OrchestratorError as error:
                self.limiter.release(job.user_id, job.job_type)
                if error.kind != ErrorKind.INVALID_TRANSITION:
                    raise
                return None
            summary.admitted += 1
        try:
            return self.state_machine.start(job.job_id, worker_id=self.worker_id)
        except OrchestratorError as error:
            if error.kind != ErrorKind.INVALID_TRANSITION:
                raise
            return None

    def _dispatch(self, job: JobView) -> None:
        key = (job.job_id, job.attempt)
        token = threading.Event()
        with self._lock:
            self._tokens[key] = token
            future = self._executor.submit(self._run_attempt, job, token)
            self._running[key] = future
        future.add_done_callback(lambda _future: self._forget(key))

    def _forget(self, key: tuple[str, int]) -> None:
        with self._lock:
            self._running.pop(key, None)
            self._tokens.pop(key, None)

    def _run_attempt(self, job: JobView, token: threading.Event) -> None:
        context = JobContext(
            job=job,
            state_machine=self.state_machine,
            cancel_event=token,
            logger=self._logger,
        )
        started = time.monotonic()
        try:
            handler = self.handlers.get(job.job_type)
            result = handler.handle(context)
            context.checkpoint()
        except JobCancelled as stopped:
            self._discard(job, reason=str(stopped))
            return
        except OrchestratorError as error:
            self._report_failure(job, error)
            return
        except Exception as error:
            self._logger.exception("Unexpected error in %s job %s", job.job_type.value, job.job_id)
            self._report_failure(job, internal_error(error))
            return
        self._report_success(job, result, latency_ms=(time.monotonic() - started) * 1000)

    def _report_success(self, job: JobView, result: dict[str, Any], *, latency_ms: float) -> None:
        try:
            completed = self.state_machine.complete(job.job_id, result)
        except OrchestratorError as error:
            if error.kind != ErrorKind.INVALID_TRANSITION:
                raise
            self._discard(job, reason=error.message)
            return
        self.metrics.record_success(job.job_type.value, latency_ms=latency_ms)
        with self._lock:
            self._outcomes.succeeded += 1
        self.notify_terminal(completed)

    def _report_failure(self, job: JobView, error: OrchestratorError) -> None:
        try:
            failed = self.state_machine.fail(job.job_id, error)
        except OrchestratorError as transition_error:
            if transition_error.kind != ErrorKind.INVALID_TRANSITION:
                raise
            self._discard(job, reason=transition_error.message)
            return
        self.metrics.record_failure(job.job_type.value, error_kind=error.kind.value)
        self._after_failure(failed, error, source=JobStatus.FAILED)

    def _after_failure(self, job: JobView, error: OrchestratorError, *, source: JobStatus) -> None:
        decision = self.retry_policy.decide(
            job_type=job.job_type,
            attempt=job.attempt,
            max_retries=job.max_retries,
            error=error,
        )
        if decision.retry:
            run_after = self._clock() + timedelta(seconds=decision.delay_seconds)
            try:
                self.state_machine.schedule_retry(
                    job.job_id,
                    run_after=run_after,
                    delay_seconds=decision.delay_seconds,
                )
            except OrchestratorError as transition_error:
                if transition_error.kind != ErrorKind.INVALID_TRANSITION:
                    raise
                return
            self.metrics.record_retry(job.job_type.value)
            with self._lock:
                self._outcomes.retried += 1
            self._logger.warning(
                "Job %s failed with %s; retry %d in %.1fs",
                job.job_id,
                error.kind.value,
                decision.retry_number,
                decision.delay_seconds,
            )
            return

        final = job
        if source == JobStatus.TIMEOUT:
            try:
                final = self.state_machine.fail(job.job_id, error, expected=JobStatus.TIMEOUT)
            except OrchestratorError as transition_error:
                if transition_error.kind != ErrorKind.INVALID_TRANSITION:
                    raise
                return
        with self._lock:
            self._outcomes.failed += 1
        self._logger.warning(
            "Job %s failed permanently (%s): %s",
            job.job_id,
            decision.reason,
            error.message,
        )
        self.notify_terminal(final)

    def _discard(self, job: JobView, *, reason: str) -> None:
        self._logger.info(
            "Discarding result of job %s attempt %d: %s",
            job.job_id,
            job.attempt,
            reason,
        )
        self.metrics.record_error("discarded_result")
        with self._lock:
            self._outcomes.discarded += 1

    def _on_lifecycle(self, event: LifecycleEvent) -> None:
        if event.status_from != JobStatus.PROCESSING:
            return
        if event.job.status == JobStatus.PROCESSING:
            return
        with self._lock:
            token = self._tokens.get((event.job.job_id, event.job.attempt))
        if token is not None:
            token.set()

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self._logger.warning("Received %s; finishing running attempts", name)
            self.request_stop()

        installed = False
        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
            installed = True
        except ValueError:
            # Signal handlers can only be installed in main thread.
            pass
        try:
            yield
        finally:
            if installed:
                signal.signal(signal.SIGINT, original_sigint)
                signal.signal(signal.SIGTERM, original_sigterm)
