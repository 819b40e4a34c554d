"""Process-wide composition root: builds every component once and wires them."""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime

import httpx

from cv_orchestrator.config import Settings
from cv_orchestrator.jobs.ai_tasks import build_ai_handlers
from cv_orchestrator.jobs.concurrency import UserConcurrencyLimiter
from cv_orchestrator.jobs.handlers import (
    CollaboratorCall,
    CollaboratorHandler,
    HandlerRegistry,
    record_only,
)
from cv_orchestrator.jobs.models import JobType
from cv_orchestrator.jobs.repository import JobRepository
from cv_orchestrator.jobs.retry import RetryPolicy, RetryRule
from cv_orchestrator.jobs.scheduler import Scheduler
from cv_orchestrator.jobs.service import JobService
from cv_orchestrator.jobs.state_machine import JobStateMachine
from cv_orchestrator.metrics import MetricsCollector
from cv_orchestrator.providers.base import AiProvider
from cv_orchestrator.providers.router import ProviderRouter
from cv_orchestrator.storage.common import utc_now
from cv_orchestrator.webhooks.dispatcher import WebhookDeliveryHandler, WebhookDispatcher
from cv_orchestrator.webhooks.repository import WebhookRepository

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Runtime:
    """Handles to the wired components of one process."""

    settings: Settings
    jobs: JobRepository
    webhooks: WebhookRepository
    state_machine: JobStateMachine
    metrics: MetricsCollector
    router: ProviderRouter
    retry_policy: RetryPolicy
    limiter: UserConcurrencyLimiter
    handlers: HandlerRegistry
    scheduler: Scheduler
    service: JobService
    dispatcher: WebhookDispatcher

    def close(self) -> None:
        self.scheduler.shutdown()
        self.dispatcher.close()
        self.router.close()
        self.webhooks.close()
        self.jobs.close()


def build_runtime(  # noqa: PLR0913
    settings: Settings,
    *,
    clock: Callable[[], datetime] = utc_now,
    monotonic: Callable[[], float] = time.monotonic,
    providers: Mapping[str, AiProvider] | None = None,
    provider_transport: httpx.BaseTransport | None = None,
    webhook_transport: httpx.BaseTransport | None = None,
    collaborators: Mapping[JobType, CollaboratorCall] | None = None,
    rng: random.Random | None = None,
    migrate: bool = True,
) -> Runtime:
    """Construct metrics, router, state machine, scheduler and dispatcher once."""

    settings.validate()
    jobs = JobRepository(settings.db_path, sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms)
    if migrate:
        jobs.init_schema()
    webhooks = WebhookRepository(
        settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )

    metrics = MetricsCollector(latency_window=settings.metrics.latency_window)
    state_machine = JobStateMachine(jobs, clock=clock)
    router = ProviderRouter.from_settings(
        settings.providers,
        transport=provider_transport,
        providers=providers,
        clock=monotonic,
    )
    retry_policy = RetryPolicy(
        RetryRule.from_settings(settings.retry),
        type_rules={JobType.WEBHOOK_DELIVERY: RetryRule.for_webhooks(settings.webhooks)},
        rng=rng,
    )
    limiter = UserConcurrencyLimiter(
        tier_limits=settings.scheduler.tier_limits,
        default_tier=settings.scheduler.default_tier,
        user_tiers=settings.scheduler.user_tiers,
        unlimited_types=settings.scheduler.unlimited_types,
    )
    state_machine.subscribe(limiter.observe)

    handlers = HandlerRegistry()
    for job_type, handler in build_ai_handlers(router=router, metrics=metrics).items():
        handlers.register(job_type, handler)
    calls = dict(collaborators or {})
    handlers.register(
        JobType.EMAIL_NOTIFICATION,
        CollaboratorHandler(
            calls.get(JobType.EMAIL_NOTIFICATION, record_only),
            required_fields=("to", "template"),
        ),
    )
    handlers.register(
        JobType.DOCUMENT_EXPORT,
        CollaboratorHandler(
            calls.get(JobType.DOCUMENT_EXPORT, record_only),
            required_fields=("format",),
        ),
    )

    scheduler = Scheduler(
        state_machine=state_machine,
        handlers=handlers,
        retry_policy=retry_policy,
        limiter=limiter,
        metrics=metrics,
        settings=settings.scheduler,
        clock=clock,
    )
    service = JobService(
        state_machine=state_machine,
        scheduler_settings=settings.scheduler,
        retry_settings=settings.retry,
        on_terminal=scheduler.notify_terminal,
        clock=clock,
    )
    dispatcher = WebhookDispatcher(
        repository=webhooks,
        job_service=service,
        settings=settings.webhooks,
        clock=clock,
        transport=webhook_transport,
    )
    handlers.register(JobType.WEBHOOK_DELIVERY, WebhookDeliveryHandler(dispatcher))
    scheduler.add_terminal_listener(dispatcher.handle_terminal_job)

    logger.debug(
        "Runtime ready: db=%s providers=%s workers=%d",
        settings.db_path,
        ",".join(router.descriptors),
        settings.scheduler.worker_pool_size,
    )
    return Runtime(
        settings=settings,
        jobs=jobs,
        webhooks=webhooks,
        state_machine=state_machine,
        metrics=metrics,
        router=router,
        retry_policy=retry_policy,
        limiter=limiter,
        handlers=handlers,
        scheduler=scheduler,
        service=service,
        dispatcher=dispatcher,
    )
