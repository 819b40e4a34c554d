"""Retry and backoff policy for failed jobs."""

from __future__ import annotations

import random
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum

from cv_orchestrator.config import MAX_RETRIES_CEILING, RetrySettings, WebhookSettings
from cv_orchestrator.errors import ErrorKind, OrchestratorError
from cv_orchestrator.jobs.models import JobType


class RetryStrategy(str, Enum):
    EXPONENTIAL = "exponential"
    LINEAR = "linear"
    FIXED = "fixed"


@dataclass(slots=True, frozen=True)
class RetryRule:
    """Backoff shape for one job type."""

    strategy: RetryStrategy = RetryStrategy.EXPONENTIAL
    base_delay_seconds: float = 30.0
    multiplier: float = 2.0
    max_delay_seconds: float = 900.0
    jitter_ratio: float = 0.0

    @classmethod
    def from_settings(cls, settings: RetrySettings) -> RetryRule:
        return cls(
            strategy=RetryStrategy(settings.strategy),
            base_delay_seconds=settings.base_delay_seconds,
            multiplier=settings.multiplier,
            max_delay_seconds=settings.max_delay_seconds,
            jitter_ratio=settings.jitter_ratio,
        )

    @classmethod
    def for_webhooks(cls, settings: WebhookSettings) -> RetryRule:
        return cls(
            strategy=RetryStrategy.EXPONENTIAL,
            base_delay_seconds=settings.base_delay_seconds,
            multiplier=2.0,
            max_delay_seconds=settings.max_delay_seconds,
        )


@dataclass(slots=True, frozen=True)
class RetryDecision:
    """Outcome of one retry evaluation."""

    retry: bool
    reason: str
    delay_seconds: float = 0.0
    retry_number: int | None = None


class RetryPolicy:
    """Decides whether and when a failed job runs again.

    ``attempt`` is 1-based; a job may run at most ``max_retries + 1`` times.
    An AI provider timeout is always treated as retryable, but never buys an
    attempt beyond the job's retry budget.
    """

    def __init__(
        self,
        default_rule: RetryRule,
        *,
        type_rules: Mapping[JobType, RetryRule] | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.default_rule = default_rule
        self.type_rules = dict(type_rules or {})
        self._random = rng or random.Random()  # noqa: S311

    def rule_for(self, job_type: JobType) -> RetryRule:
        return self.type_rules.get(job_type, self.default_rule)

    def decide(
        self,
        *,
        job_type: JobType,
        attempt: int,
        max_retries: int,
        error: OrchestratorError,
    ) -> RetryDecision:
        retryable = error.retryable or error.kind == ErrorKind.AI_TIMEOUT
        if not retryable:
            return RetryDecision(retry=False, reason="non_retryable")

        budget = max(0, min(max_retries, MAX_RETRIES_CEILING))
        retries_used = attempt - 1
        if retries_used >= budget:
            return RetryDecision(retry=False, reason="retry_budget_exhausted")

        retry_number = retries_used + 1
        delay = self.compute_delay(job_type=job_type, retry_number=retry_number)
        cooldown = _cooldown_seconds(error)
        if cooldown is not None:
            delay = max(delay, min(cooldown, self.rule_for(job_type).max_delay_seconds))
        return RetryDecision(
            retry=True,
            reason="retryable",
            delay_seconds=delay,
            retry_number=retry_number,
        )

    def compute_delay(self, *, job_type: JobType, retry_number: int) -> float:
        """Delay before retry ``retry_number`` (1 for the first retry)."""

        rule = self.rule_for(job_type)
        n = max(1, retry_number)
        if rule.strategy == RetryStrategy.EXPONENTIAL:
            raw = rule.base_delay_seconds * (rule.multiplier ** (n - 1))
        elif rule.strategy == RetryStrategy.LINEAR:
            raw = rule.base_delay_seconds * n
        else:
            raw = rule.base_delay_seconds
        delay = min(rule.max_delay_seconds, raw)
        if rule.jitter_ratio > 0:
            delay *= self._random.uniform(1 - rule.jitter_ratio, 1 + rule.jitter_ratio)
            delay = min(rule.max_delay_seconds, delay)
        return delay


def _cooldown_seconds(error: OrchestratorError) -> float | None:
    if error.kind != ErrorKind.AI_QUOTA_EXCEEDED:
        return None
    raw = error.context.get("retry_after_seconds")
    if raw is None:
        return None
    try:
        return max(0.0, float(raw))
    except (TypeError, ValueError):
        return None
