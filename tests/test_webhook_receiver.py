from __future__ import annotations

from typing import Any

import allure
import pytest

from cv_orchestrator.errors import ErrorKind, OrchestratorError
from cv_orchestrator.webhooks.receiver import ALREADY_PROCESSED, PROCESSED, WebhookReceiver
from cv_orchestrator.webhooks.signing import canonical_json, sign_payload
from conftest import FakeClock

pytestmark = [
    allure.epic("Webhooks"),
    allure.feature("Receiver Verification"),
]

SECRET = "whsec-test"


def _signed(
    clock: FakeClock,
    *,
    delivery_id: str = "d-1",
    secret: str = SECRET,
) -> tuple[dict[str, str], str]:
    body = canonical_json({"event": "job.completed", "id": delivery_id, "data": {"job_id": "j"}})
    timestamp_ms = int(clock().timestamp() * 1000)
    headers = {
        "X-Webhook-Signature": sign_payload(secret, timestamp_ms, body),
        "X-Webhook-Delivery-Id": delivery_id,
        "X-Webhook-Timestamp": str(timestamp_ms),
    }
    return headers, body


def test_first_delivery_is_processed_once(clock: FakeClock) -> None:
    events: list[dict[str, Any]] = []
    receiver = WebhookReceiver(SECRET, clock=clock, on_event=events.append)
    headers, body = _signed(clock)

    assert receiver.receive(headers, body) == PROCESSED
    assert receiver.receive(headers, body.encode()) == ALREADY_PROCESSED

    assert [event["id"] for event in events] == ["d-1"]
    assert receiver.has_seen("d-1")


def test_headers_are_case_insensitive(clock: FakeClock) -> None:
    receiver = WebhookReceiver(SECRET, clock=clock)
    headers, body = _signed(clock)

    assert receiver.receive({key.lower(): value for key, value in headers.items()}, body) == (
        PROCESSED
    )


def test_missing_headers_are_rejected(clock: FakeClock) -> None:
    receiver = WebhookReceiver(SECRET, clock=clock)
    headers, body = _signed(clock)
    del headers["X-Webhook-Delivery-Id"]

    with pytest.raises(OrchestratorError) as raised:
        receiver.receive(headers, body)

    assert raised.value.kind == ErrorKind.VALIDATION


def test_malformed_timestamp_is_rejected(clock: FakeClock) -> None:
    receiver = WebhookReceiver(SECRET, clock=clock)
    headers, body = _signed(clock)
    headers["X-Webhook-Timestamp"] = "yesterday"

    with pytest.raises(OrchestratorError) as raised:
        receiver.receive(headers, body)

    assert raised.value.kind == ErrorKind.VALIDATION


def test_old_timestamp_is_rejected(clock: FakeClock) -> None:
    receiver = WebhookReceiver(SECRET, clock=clock)
    headers, body = _signed(clock)

    clock.advance(901)

    with pytest.raises(OrchestratorError, match="tolerance") as raised:
        receiver.receive(headers, body)
    assert raised.value.kind == ErrorKind.VALIDATION
    assert not receiver.has_seen("d-1")


def test_timestamp_within_tolerance_is_accepted(clock: FakeClock) -> None:
    receiver = WebhookReceiver(SECRET, clock=clock)
    headers, body = _signed(clock)

    clock.advance(899)

    assert receiver.receive(headers, body) == PROCESSED


def test_wrong_secret_is_forbidden(clock: FakeClock) -> None:
    receiver = WebhookReceiver(SECRET, clock=clock)
    headers, body = _signed(clock, secret="someone-else")

    with pytest.raises(OrchestratorError) as raised:
        receiver.receive(headers, body)

    assert raised.value.kind == ErrorKind.FORBIDDEN
    assert raised.value.context == {"delivery_id": "d-1"}


def test_failed_processing_allows_redelivery(clock: FakeClock) -> None:
    calls: list[str] = []

    def _flaky(event: dict[str, Any]) -> None:
        calls.append(event["id"])
        if len(calls) == 1:
            raise RuntimeError("database unavailable")

    receiver = WebhookReceiver(SECRET, clock=clock, on_event=_flaky)
    headers, body = _signed(clock)

    with pytest.raises(RuntimeError):
        receiver.receive(headers, body)
    assert not receiver.has_seen("d-1")

    assert receiver.receive(headers, body) == PROCESSED
    assert calls == ["d-1", "d-1"]
    assert len(receiver.processed) == 1


def test_unparseable_body_does_not_consume_delivery_id(clock: FakeClock) -> None:
    receiver = WebhookReceiver(SECRET, clock=clock)
    timestamp_ms = int(clock().timestamp() * 1000)
    truncated = '{"event": "job.completed", "id": "d-1"'
    headers = {
        "X-Webhook-Signature": sign_payload(SECRET, timestamp_ms, truncated),
        "X-Webhook-Delivery-Id": "d-1",
        "X-Webhook-Timestamp": str(timestamp_ms),
    }

    with pytest.raises(OrchestratorError) as raised:
        receiver.receive(headers, truncated)

    assert raised.value.kind == ErrorKind.VALIDATION
    assert not receiver.has_seen("d-1")
    fixed_headers, body = _signed(clock)
    assert receiver.receive(fixed_headers, body) == PROCESSED
