"""Deterministic classification of provider HTTP failures into error kinds."""

from __future__ import annotations

from dataclasses import dataclass

from cv_orchestrator.errors import ErrorKind, OrchestratorError

PROVIDER_FAILURE_CLASSIFIER_VERSION = 1

_QUOTA_PATTERNS: tuple[str, ...] = (
    "insufficient_quota",
    "quota",
    "resource_exhausted",
    "billing",
    "payment",
    "credits",
    "usage limit",
)
_ACCESS_OR_AUTH_PATTERNS: tuple[str, ...] = (
    "invalid api key",
    "invalid_api_key",
    "incorrect api key",
    "unauthorized",
    "permission denied",
    "authentication",
    "forbidden",
)
_MODEL_NOT_AVAILABLE_PATTERNS: tuple[str, ...] = (
    "model not found",
    "model_not_found",
    "unknown model",
    "unsupported model",
    "invalid model",
    "does not exist",
)
_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "rate limit",
    "rate_limit",
    "too many requests",
    "overloaded",
)
_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "temporarily unavailable",
    "service unavailable",
    "internal server error",
    "bad gateway",
    "connection reset",
    "try again later",
)
_AUTH_STATUSES = frozenset({401, 403})
_TIMEOUT_STATUSES = frozenset({408, 504})
_RATE_LIMIT_STATUS = 429
_NOT_FOUND_STATUS = 404
_SERVER_ERROR_FLOOR = 500


@dataclass(slots=True)
class ProviderFailureClassification:
    """Normalized failure classification result."""

    kind: ErrorKind
    retryable: bool
    reason_code: str
    matched_rule: str
    matched_pattern: str | None

    def to_error(
        self,
        *,
        provider: str,
        message: str,
        status_code: int | None,
        retry_after_seconds: float | None = None,
    ) -> OrchestratorError:
        context: dict[str, object] = {
            "provider": provider,
            "status_code": status_code,
            "reason_code": self.reason_code,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
            "classifier_version": PROVIDER_FAILURE_CLASSIFIER_VERSION,
        }
        if retry_after_seconds is not None:
            context["retry_after_seconds"] = retry_after_seconds
        return OrchestratorError(self.kind, message, retryable=self.retryable, context=context)


def classify_provider_failure(  # noqa: PLR0911
    *,
    provider: str,
    status_code: int | None,
    body: str,
) -> ProviderFailureClassification:
    """Classify a non-2xx provider response into a retry-relevant error kind."""

    haystack = body.lower()

    pattern = _first_match(haystack, _QUOTA_PATTERNS)
    if pattern is not None:
        return ProviderFailureClassification(
            kind=ErrorKind.AI_QUOTA_EXCEEDED,
            retryable=True,
            reason_code=f"{provider}_quota_exceeded",
            matched_rule="quota",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _ACCESS_OR_AUTH_PATTERNS)
    if pattern is not None or status_code in _AUTH_STATUSES:
        return ProviderFailureClassification(
            kind=ErrorKind.AI_SERVICE,
            retryable=False,
            reason_code=f"{provider}_access_or_auth",
            matched_rule="access_or_auth",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _MODEL_NOT_AVAILABLE_PATTERNS)
    if pattern is not None or status_code == _NOT_FOUND_STATUS:
        return ProviderFailureClassification(
            kind=ErrorKind.AI_SERVICE,
            retryable=False,
            reason_code=f"{provider}_model_not_available",
            matched_rule="model_not_available",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _RATE_LIMIT_PATTERNS)
    if pattern is not None or status_code == _RATE_LIMIT_STATUS:
        return ProviderFailureClassification(
            kind=ErrorKind.AI_QUOTA_EXCEEDED,
            retryable=True,
            reason_code=f"{provider}_rate_limited",
            matched_rule="rate_limit",
            matched_pattern=pattern,
        )

    if status_code in _TIMEOUT_STATUSES:
        return ProviderFailureClassification(
            kind=ErrorKind.AI_TIMEOUT,
            retryable=True,
            reason_code=f"{provider}_upstream_timeout",
            matched_rule="timeout_status",
            matched_pattern=None,
        )

    pattern = _first_match(haystack, _TRANSIENT_PATTERNS)
    if pattern is not None or (status_code or 0) >= _SERVER_ERROR_FLOOR:
        return ProviderFailureClassification(
            kind=ErrorKind.AI_SERVICE,
            retryable=True,
            reason_code=f"{provider}_backend_transient",
            matched_rule="transient_status" if pattern is None else "generic_transient",
            matched_pattern=pattern,
        )

    return ProviderFailureClassification(
        kind=ErrorKind.AI_SERVICE,
        retryable=False,
        reason_code=f"{provider}_request_rejected",
        matched_rule="fallback_non_retryable",
        matched_pattern=None,
    )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
