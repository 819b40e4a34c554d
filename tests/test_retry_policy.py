from __future__ import annotations

import random

import allure
import pytest

from cv_orchestrator.config import RetrySettings, WebhookSettings
from cv_orchestrator.errors import ErrorKind, OrchestratorError
from cv_orchestrator.jobs.models import JobType
from cv_orchestrator.jobs.retry import RetryPolicy, RetryRule, RetryStrategy

pytestmark = [
    allure.epic("Job Lifecycle"),
    allure.feature("Retry & Backoff"),
]


def _policy(strategy: RetryStrategy = RetryStrategy.EXPONENTIAL, **kwargs: float) -> RetryPolicy:
    return RetryPolicy(
        RetryRule(
            strategy=strategy,
            base_delay_seconds=kwargs.get("base", 30.0),
            multiplier=kwargs.get("multiplier", 2.0),
            max_delay_seconds=kwargs.get("cap", 900.0),
            jitter_ratio=kwargs.get("jitter", 0.0),
        ),
        rng=random.Random(7),
    )


def _error(kind: ErrorKind = ErrorKind.AI_SERVICE, **kwargs: object) -> OrchestratorError:
    return OrchestratorError(kind, "failure", **kwargs)  # type: ignore[arg-type]


@pytest.mark.parametrize(
    ("strategy", "expected"),
    [
        (RetryStrategy.EXPONENTIAL, [30.0, 60.0, 120.0, 240.0]),
        (RetryStrategy.LINEAR, [30.0, 60.0, 90.0, 120.0]),
        (RetryStrategy.FIXED, [30.0, 30.0, 30.0, 30.0]),
    ],
)
def test_delay_shapes(strategy: RetryStrategy, expected: list[float]) -> None:
    policy = _policy(strategy)

    delays = [policy.compute_delay(job_type=JobType.PARSING, retry_number=n) for n in range(1, 5)]

    assert delays == expected


def test_delay_is_capped() -> None:
    policy = _policy(cap=100.0)

    assert policy.compute_delay(job_type=JobType.PARSING, retry_number=3) == 100.0
    assert policy.compute_delay(job_type=JobType.PARSING, retry_number=10) == 100.0


def test_jitter_stays_within_ratio_and_cap() -> None:
    policy = _policy(jitter=0.2, cap=100.0)

    for retry_number in range(1, 6):
        raw = min(100.0, 30.0 * 2 ** (retry_number - 1))
        delay = policy.compute_delay(job_type=JobType.PARSING, retry_number=retry_number)
        assert raw * 0.8 <= delay <= min(100.0, raw * 1.2)


def test_retry_allowed_while_budget_remains() -> None:
    policy = _policy()

    decision = policy.decide(
        job_type=JobType.PARSING,
        attempt=1,
        max_retries=3,
        error=_error(),
    )

    assert decision.retry is True
    assert decision.retry_number == 1
    assert decision.delay_seconds == 30.0


def test_retry_budget_exhausted() -> None:
    policy = _policy()

    decision = policy.decide(
        job_type=JobType.PARSING,
        attempt=4,
        max_retries=3,
        error=_error(),
    )

    assert decision.retry is False
    assert decision.reason == "retry_budget_exhausted"


def test_non_retryable_error_is_final() -> None:
    policy = _policy()

    decision = policy.decide(
        job_type=JobType.PARSING,
        attempt=1,
        max_retries=3,
        error=_error(ErrorKind.AI_INVALID_RESPONSE),
    )

    assert decision.retry is False
    assert decision.reason == "non_retryable"


def test_ai_timeout_is_retried_even_when_flagged_non_retryable() -> None:
    policy = _policy()

    decision = policy.decide(
        job_type=JobType.PARSING,
        attempt=1,
        max_retries=1,
        error=_error(ErrorKind.AI_TIMEOUT, retryable=False),
    )

    assert decision.retry is True


def test_zero_retries_means_no_retry_even_for_ai_timeout() -> None:
    policy = _policy()

    decision = policy.decide(
        job_type=JobType.PARSING,
        attempt=1,
        max_retries=0,
        error=_error(ErrorKind.AI_TIMEOUT),
    )

    assert decision.retry is False
    assert decision.reason == "retry_budget_exhausted"


def test_budget_above_ceiling_is_clamped_to_ten() -> None:
    policy = _policy(cap=10.0)

    assert policy.decide(
        job_type=JobType.PARSING,
        attempt=10,
        max_retries=25,
        error=_error(),
    ).retry
    assert not policy.decide(
        job_type=JobType.PARSING,
        attempt=11,
        max_retries=25,
        error=_error(),
    ).retry


def test_quota_retry_after_sets_a_cooldown_floor() -> None:
    policy = _policy()

    decision = policy.decide(
        job_type=JobType.PARSING,
        attempt=1,
        max_retries=3,
        error=_error(ErrorKind.AI_QUOTA_EXCEEDED, context={"retry_after_seconds": 120}),
    )

    assert decision.delay_seconds == 120.0


def test_cooldown_never_exceeds_rule_cap() -> None:
    policy = _policy(cap=60.0)

    decision = policy.decide(
        job_type=JobType.PARSING,
        attempt=1,
        max_retries=3,
        error=_error(ErrorKind.AI_QUOTA_EXCEEDED, context={"retry_after_seconds": 3600}),
    )

    assert decision.delay_seconds == 60.0


def test_type_rule_overrides_default() -> None:
    policy = RetryPolicy(
        RetryRule.from_settings(RetrySettings(jitter_ratio=0.0)),
        type_rules={
            JobType.WEBHOOK_DELIVERY: RetryRule.for_webhooks(
                WebhookSettings(base_delay_seconds=1.0, max_delay_seconds=300.0),
            ),
        },
    )

    assert policy.compute_delay(job_type=JobType.WEBHOOK_DELIVERY, retry_number=3) == 4.0
    assert policy.compute_delay(job_type=JobType.PARSING, retry_number=3) == 120.0
