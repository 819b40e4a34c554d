from __future__ import annotations

import hashlib
import hmac

import allure

from cv_orchestrator.webhooks.signing import canonical_json, sign_payload, verify_signature

pytestmark = [
    allure.epic("Webhooks"),
    allure.feature("Signing"),
]


def test_canonical_json_is_stable() -> None:
    assert canonical_json({"b": 1, "a": {"d": [1, 2], "c": "é"}}) == (
        '{"a":{"c":"é","d":[1,2]},"b":1}'
    )


def test_signature_covers_timestamp_and_body() -> None:
    body = canonical_json({"event": "job.completed"})
    expected = hmac.new(
        b"s3cret",
        f"1760864400000.{body}".encode(),
        hashlib.sha256,
    ).hexdigest()

    assert sign_payload("s3cret", 1760864400000, body) == f"sha256={expected}"


def test_verify_accepts_matching_signature() -> None:
    body = '{"event":"job.completed"}'
    signature = sign_payload("s3cret", 1000, body)

    assert verify_signature("s3cret", 1000, body, signature)
    assert verify_signature("s3cret", 1000, body.encode(), f" {signature} ")


def test_verify_rejects_tampering() -> None:
    body = '{"event":"job.completed"}'
    signature = sign_payload("s3cret", 1000, body)

    assert not verify_signature("other", 1000, body, signature)
    assert not verify_signature("s3cret", 1001, body, signature)
    assert not verify_signature("s3cret", 1000, body.replace("completed", "failed"), signature)
    assert not verify_signature("s3cret", 1000, b"\xff\xfe", signature)
