"""Consumer-side verification of deliveries with delivery-id idempotency."""

from __future__ import annotations

import json
import threading
from collections.abc import Callable, Mapping
from datetime import datetime
from typing import Any

from cv_orchestrator.errors import ErrorKind, OrchestratorError, validation_error
from cv_orchestrator.storage.common import utc_now
from cv_orchestrator.webhooks.signing import verify_signature

PROCESSED = "processed"
ALREADY_PROCESSED = "already_processed"


class WebhookReceiver:
    """Reference receiver: verifies signature and freshness, then processes each id once.

    Seen delivery ids are kept in memory; ``on_event`` runs only for the first
    delivery of an id, and a failing ``on_event`` leaves the id unseen so the
    sender's retry can succeed.
    """

    def __init__(
        self,
        secret: str,
        *,
        tolerance_seconds: int = 900,
        clock: Callable[[], datetime] = utc_now,
        on_event: Callable[[dict[str, Any]], None] | None = None,
    ) -> None:
        self._secret = secret
        self.tolerance_seconds = tolerance_seconds
        self._clock = clock
        self._on_event = on_event
        self._lock = threading.Lock()
        self._seen: set[str] = set()
        self.processed: list[dict[str, Any]] = []

    def receive(self, headers: Mapping[str, str], body: bytes | str) -> str:
        normalized = {key.lower(): value for key, value in headers.items()}
        signature = normalized.get("x-webhook-signature")
        delivery_id = normalized.get("x-webhook-delivery-id")
        raw_timestamp = normalized.get("x-webhook-timestamp")
        if not signature or not delivery_id or not raw_timestamp:
            raise validation_error("Missing webhook signature headers.")
        try:
            timestamp_ms = int(raw_timestamp)
        except ValueError as error:
            raise validation_error("Malformed webhook timestamp.", value=raw_timestamp) from error

        now_ms = int(self._clock().timestamp() * 1000)
        if abs(now_ms - timestamp_ms) > self.tolerance_seconds * 1000:
            raise validation_error("Webhook timestamp outside tolerance.", delivery_id=delivery_id)
        if not verify_signature(self._secret, timestamp_ms, body, signature):
            raise OrchestratorError(
                ErrorKind.FORBIDDEN,
                "Webhook signature mismatch.",
                context={"delivery_id": delivery_id},
            )

        try:
            event = json.loads(body.decode() if isinstance(body, bytes) else body)
        except ValueError as error:
            raise validation_error(
                "Webhook body is not valid JSON.",
                delivery_id=delivery_id,
            ) from error

        with self._lock:
            if delivery_id in self._seen:
                return ALREADY_PROCESSED
            self._seen.add(delivery_id)

        try:
            if self._on_event is not None:
                self._on_event(event)
        except Exception:
            with self._lock:
                self._seen.discard(delivery_id)
            raise
        with self._lock:
            self.processed.append(event)
        return PROCESSED

    def has_seen(self, delivery_id: str) -> bool:
        with self._lock:
            return delivery_id in self._seen
