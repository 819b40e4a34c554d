"""Tagged error variants shared by all orchestrator components."""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    """Closed set of failure kinds surfaced to callers and stored on jobs."""

    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    FORBIDDEN = "forbidden"
    INVALID_TRANSITION = "invalid_transition"
    AI_SERVICE = "ai_service"
    AI_TIMEOUT = "ai_timeout"
    AI_QUOTA_EXCEEDED = "ai_quota_exceeded"
    AI_INVALID_RESPONSE = "ai_invalid_response"
    JOB_TIMEOUT = "job_timeout"
    CANCELLED = "cancelled"
    DELIVERY_FAILED = "delivery_failed"
    DELIVERY_EXPIRED = "delivery_expired"
    INTERNAL = "internal"


ERROR_CODES: dict[ErrorKind, str] = {
    ErrorKind.VALIDATION: "ERR_1001",
    ErrorKind.NOT_FOUND: "ERR_2001",
    ErrorKind.FORBIDDEN: "ERR_3001",
    ErrorKind.INVALID_TRANSITION: "ERR_2004",
    ErrorKind.AI_SERVICE: "ERR_6001",
    ErrorKind.AI_TIMEOUT: "ERR_6002",
    ErrorKind.AI_QUOTA_EXCEEDED: "ERR_6003",
    ErrorKind.AI_INVALID_RESPONSE: "ERR_6007",
    ErrorKind.JOB_TIMEOUT: "ERR_2006",
    ErrorKind.CANCELLED: "ERR_2007",
    ErrorKind.DELIVERY_FAILED: "ERR_9003",
    ErrorKind.DELIVERY_EXPIRED: "ERR_9004",
    ErrorKind.INTERNAL: "ERR_5000",
}

_RETRYABLE_BY_DEFAULT = frozenset(
    {
        ErrorKind.AI_SERVICE,
        ErrorKind.AI_TIMEOUT,
        ErrorKind.AI_QUOTA_EXCEEDED,
        ErrorKind.JOB_TIMEOUT,
        ErrorKind.DELIVERY_FAILED,
        ErrorKind.INTERNAL,
    },
)

# Specific codes that refine a kind without widening the enum.
JOB_MAX_RETRIES_EXCEEDED = "ERR_2005"
WEBHOOK_INACTIVE = "ERR_9005"


class OrchestratorError(Exception):
    """Single exception type; callers branch on ``kind``, never on subclass."""

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        *,
        retryable: bool | None = None,
        code: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.retryable = kind in _RETRYABLE_BY_DEFAULT if retryable is None else retryable
        self.code = code or ERROR_CODES[kind]
        self.context: dict[str, Any] = dict(context or {})

    def __repr__(self) -> str:
        return (
            f"OrchestratorError(kind={self.kind.value!r}, code={self.code!r}, "
            f"retryable={self.retryable!r}, message={self.message!r})"
        )

    def to_payload(self) -> dict[str, Any]:
        """Serialize for job records, webhook payloads and CLI output."""

        return {
            "kind": self.kind.value,
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
            "context": self.context,
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> OrchestratorError:
        """Rebuild an error previously stored with ``to_payload``."""

        return cls(
            ErrorKind(str(payload["kind"])),
            str(payload.get("message", "")),
            retryable=bool(payload.get("retryable", False)),
            code=payload.get("code"),
            context=payload.get("context") or {},
        )


def validation_error(message: str, **context: Any) -> OrchestratorError:
    return OrchestratorError(ErrorKind.VALIDATION, message, context=context)


def not_found(entity: str, entity_id: str) -> OrchestratorError:
    return OrchestratorError(
        ErrorKind.NOT_FOUND,
        f"{entity} not found: {entity_id}",
        context={"entity": entity, "id": entity_id},
    )


def internal_error(error: BaseException) -> OrchestratorError:
    """Wrap an unexpected exception so it flows through the retry layer."""

    return OrchestratorError(
        ErrorKind.INTERNAL,
        f"{type(error).__name__}: {error}",
        context={"exception_type": type(error).__name__},
    )
