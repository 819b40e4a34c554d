"""Signed webhook deliveries for settled jobs."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from datetime import datetime
from typing import Any
from urllib.parse import urlsplit
from uuid import uuid4

import httpx

from cv_orchestrator.config import MAX_RETRIES_CEILING, WebhookSettings
from cv_orchestrator.errors import (
    WEBHOOK_INACTIVE,
    ErrorKind,
    OrchestratorError,
    not_found,
)
from cv_orchestrator.jobs.handlers import JobContext
from cv_orchestrator.jobs.models import JobStatus, JobType, JobView
from cv_orchestrator.jobs.service import JobService
from cv_orchestrator.storage.common import utc_now
from cv_orchestrator.webhooks.models import (
    DeliveryStatus,
    DeliveryView,
    WebhookView,
    events_for_job,
)
from cv_orchestrator.webhooks.repository import WebhookRepository
from cv_orchestrator.webhooks.signing import canonical_json, sign_payload

SIGNATURE_HEADER = "X-Webhook-Signature"
DELIVERY_ID_HEADER = "X-Webhook-Delivery-Id"
TIMESTAMP_HEADER = "X-Webhook-Timestamp"
EVENT_HEADER = "X-Webhook-Event"
ATTEMPT_HEADER = "X-Webhook-Attempt"
_RATE_LIMITED = 429
_SERVER_ERROR_FLOOR = 500


def occurrence_key(event: str, job: JobView) -> str:
    """Identity of one event occurrence; a job retry is a new occurrence."""

    return f"{event}:{job.job_id}:{job.attempt}"


def build_event_data(job: JobView) -> dict[str, Any]:
    data: dict[str, Any] = {
        "job_id": job.job_id,
        "job_type": job.job_type.value,
        "status": job.status.value,
        "user_id": job.user_id,
        "resource_id": job.resource_id,
        "attempt": job.attempt,
        "progress": job.progress,
        "completed_at": job.completed_at.isoformat() if job.completed_at else None,
    }
    if job.status == JobStatus.COMPLETED:
        data["result"] = job.result
    elif job.error is not None:
        data["error"] = job.error.to_payload()
    return data


class WebhookDispatcher:
    """Turns settled jobs into deliveries and executes them.

    Each delivery is signed once at creation and then carried by its own
    ``webhook_delivery`` job, so every retry resends the same delivery id,
    timestamp and signature and goes through the regular retry policy.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: WebhookRepository,
        job_service: JobService,
        settings: WebhookSettings,
        clock: Callable[[], datetime] = utc_now,
        transport: httpx.BaseTransport | None = None,
        id_factory: Callable[[], str] = lambda: str(uuid4()),
        logger: logging.Logger | None = None,
    ) -> None:
        self.repository = repository
        self.job_service = job_service
        self.settings = settings
        self._clock = clock
        self._new_id = id_factory
        self._logger = logger or logging.getLogger(__name__)
        self._client = httpx.Client(
            timeout=httpx.Timeout(
                settings.timeout_seconds,
                connect=min(5.0, settings.timeout_seconds),
            ),
            headers={"User-Agent": settings.user_agent},
            transport=transport,
            follow_redirects=False,
        )

    def close(self) -> None:
        self._client.close()

    def handle_terminal_job(self, job: JobView) -> list[DeliveryView]:
        """Terminal listener: one delivery per subscribed webhook and event."""

        if job.job_type == JobType.WEBHOOK_DELIVERY:
            return []
        deliveries: list[DeliveryView] = []
        for event in events_for_job(job.job_type, job.status):
            for webhook in self.repository.list_active_webhooks(event, user_id=job.user_id):
                delivery = self.enqueue(webhook, event=event, job=job)
                if delivery is not None:
                    deliveries.append(delivery)
        return deliveries

    def enqueue(self, webhook: WebhookView, *, event: str, job: JobView) -> DeliveryView | None:
        """Create and schedule a delivery; None when this occurrence already exists."""

        now = self._clock()
        delivery_id = self._new_id()
        timestamp_ms = int(now.timestamp() * 1000)
        body = canonical_json(
            {
                "event": event,
                "id": delivery_id,
                "timestamp": now.isoformat(),
                "data": build_event_data(job),
            },
        )
        delivery, created = self.repository.create_delivery_if_absent(
            delivery_id=delivery_id,
            webhook_id=webhook.webhook_id,
            job_id=job.job_id,
            event_type=event,
            occurrence_key=occurrence_key(event, job),
            body=body,
            signature=sign_payload(webhook.secret, timestamp_ms, body),
            timestamp_ms=timestamp_ms,
            now=now,
        )
        if not created:
            self._logger.info(
                "Delivery for %s of job %s to webhook %s already exists (%s)",
                event,
                job.job_id,
                webhook.webhook_id,
                delivery.delivery_id,
            )
            return None

        delivery_job_id = self.job_service.submit(
            JobType.WEBHOOK_DELIVERY,
            {"delivery_id": delivery.delivery_id, "webhook_id": webhook.webhook_id},
            user_id=job.user_id,
            max_retries=min(MAX_RETRIES_CEILING, max(0, self.settings.max_attempts - 1)),
            resource_id=delivery.delivery_id,
        )
        self.repository.attach_delivery_job(delivery.delivery_id, job_id=delivery_job_id, now=now)
        self._logger.info(
            "Queued %s delivery %s to webhook %s",
            event,
            delivery.delivery_id,
            webhook.webhook_id,
        )
        return delivery

    def deliver(self, delivery_id: str, *, final_attempt: bool) -> dict[str, Any]:
        """POST one delivery attempt; raises ``delivery_failed`` to trigger a retry."""

        delivery = self.repository.get_delivery(delivery_id)
        if delivery is None:
            raise not_found("Delivery", delivery_id)
        if delivery.status == DeliveryStatus.SUCCESS:
            return {"delivery_id": delivery_id, "status": delivery.status.value, "skipped": True}

        webhook = self.repository.get_webhook(delivery.webhook_id)
        if webhook is None or not webhook.is_active:
            self.repository.mark_delivery(
                delivery_id,
                DeliveryStatus.SKIPPED,
                error="webhook inactive",
                now=self._clock(),
            )
            raise OrchestratorError(
                ErrorKind.DELIVERY_FAILED,
                f"Webhook {delivery.webhook_id} is not active.",
                retryable=False,
                code=WEBHOOK_INACTIVE,
                context={"delivery_id": delivery_id, "webhook_id": delivery.webhook_id},
            )
        self._ensure_secure(webhook, delivery_id)

        now = self._clock()
        age_seconds = (now.timestamp() * 1000 - delivery.timestamp_ms) / 1000
        if age_seconds > self.settings.staleness_seconds:
            self.repository.mark_delivery(
                delivery_id,
                DeliveryStatus.EXPIRED,
                error=f"stale after {age_seconds:.0f}s",
                now=now,
            )
            self._logger.warning(
                "Delivery %s expired after %.0fs; not retrying",
                delivery_id,
                age_seconds,
            )
            raise OrchestratorError(
                ErrorKind.DELIVERY_EXPIRED,
                f"Delivery {delivery_id} is older than {self.settings.staleness_seconds}s.",
                context={"delivery_id": delivery_id, "age_seconds": round(age_seconds, 1)},
            )

        return self._post(webhook, delivery, final_attempt=final_attempt)

    def _post(
        self,
        webhook: WebhookView,
        delivery: DeliveryView,
        *,
        final_attempt: bool,
    ) -> dict[str, Any]:
        attempt_no = delivery.attempt_count + 1
        headers = {
            "Content-Type": "application/json",
            SIGNATURE_HEADER: delivery.signature,
            DELIVERY_ID_HEADER: delivery.delivery_id,
            TIMESTAMP_HEADER: str(delivery.timestamp_ms),
            EVENT_HEADER: delivery.event_type,
            ATTEMPT_HEADER: str(attempt_no),
        }
        status_code: int | None = None
        error: str | None = None
        started = time.monotonic()
        try:
            response = self._client.post(
                webhook.url,
                content=delivery.body.encode(),
                headers=headers,
            )
            status_code = response.status_code
            if not response.is_success:
                error = f"HTTP {status_code}"
        except httpx.TimeoutException:
            error = "timeout"
        except httpx.HTTPError as exc:
            error = f"{type(exc).__name__}: {exc}"
        duration_ms = int((time.monotonic() - started) * 1000)

        if error is None:
            self.repository.record_attempt(
                delivery_id=delivery.delivery_id,
                success=True,
                status_code=status_code,
                error=None,
                duration_ms=duration_ms,
                status=DeliveryStatus.SUCCESS,
                now=self._clock(),
            )
            self._logger.info(
                "Delivered %s to webhook %s (attempt %d, HTTP %s)",
                delivery.delivery_id,
                webhook.webhook_id,
                attempt_no,
                status_code,
            )
            return {
                "delivery_id": delivery.delivery_id,
                "status": DeliveryStatus.SUCCESS.value,
                "status_code": status_code,
                "attempt": attempt_no,
            }

        retryable = (
            status_code is None
            or status_code >= _SERVER_ERROR_FLOOR
            or status_code == _RATE_LIMITED
        )
        gives_up = final_attempt or not retryable
        self.repository.record_attempt(
            delivery_id=delivery.delivery_id,
            success=False,
            status_code=status_code,
            error=error,
            duration_ms=duration_ms,
            status=DeliveryStatus.EXHAUSTED if gives_up else DeliveryStatus.RETRYING,
            now=self._clock(),
        )
        self._logger.warning(
            "Delivery %s to webhook %s failed on attempt %d: %s",
            delivery.delivery_id,
            webhook.webhook_id,
            attempt_no,
            error,
        )
        raise OrchestratorError(
            ErrorKind.DELIVERY_FAILED,
            f"Delivery {delivery.delivery_id} failed: {error}",
            retryable=retryable,
            context={
                "delivery_id": delivery.delivery_id,
                "status_code": status_code,
                "attempt": attempt_no,
            },
        )

    def _ensure_secure(self, webhook: WebhookView, delivery_id: str) -> None:
        scheme = urlsplit(webhook.url).scheme.lower()
        if scheme == "https" or (scheme == "http" and self.settings.allow_insecure):
            return
        self.repository.mark_delivery(
            delivery_id,
            DeliveryStatus.SKIPPED,
            error=f"insecure URL scheme {scheme!r}",
            now=self._clock(),
        )
        raise OrchestratorError(
            ErrorKind.VALIDATION,
            f"Webhook {webhook.webhook_id} must use https.",
            context={"delivery_id": delivery_id, "webhook_id": webhook.webhook_id},
        )


class WebhookDeliveryHandler:
    """Job handler for ``webhook_delivery`` jobs."""

    def __init__(self, dispatcher: WebhookDispatcher) -> None:
        self.dispatcher = dispatcher

    def handle(self, context: JobContext) -> dict[str, Any]:
        delivery_id = str(context.require("delivery_id")["delivery_id"])
        context.progress("started")
        job = context.job
        return self.dispatcher.deliver(
            delivery_id,
            final_attempt=job.attempt >= job.max_retries + 1,
        )
