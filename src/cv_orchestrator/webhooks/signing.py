"""Canonical webhook payload encoding and HMAC-SHA256 signatures."""

from __future__ import annotations

import hashlib
import hmac
import json
from typing import Any

SIGNATURE_PREFIX = "sha256="


def canonical_json(payload: Any) -> str:
    """Stable encoding: sorted keys, no insignificant whitespace."""

    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def signing_input(timestamp_ms: int, body: str) -> bytes:
    return f"{timestamp_ms}.{body}".encode()


def sign_payload(secret: str, timestamp_ms: int, body: str) -> str:
    """Signature header value for ``body`` sent at ``timestamp_ms``."""

    digest = hmac.new(
        secret.encode(),
        signing_input(timestamp_ms, body),
        hashlib.sha256,
    ).hexdigest()
    return SIGNATURE_PREFIX + digest


def verify_signature(secret: str, timestamp_ms: int, body: str | bytes, signature: str) -> bool:
    if isinstance(body, bytes):
        try:
            body = body.decode()
        except UnicodeDecodeError:
            return False
    expected = sign_payload(secret, timestamp_ms, body)
    return hmac.compare_digest(expected, signature.strip())
