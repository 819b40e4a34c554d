"""Debuggable job identifiers: ``{type}:{resource}:{epoch_ms}:{random}``."""

from __future__ import annotations

import re
import secrets
from dataclasses import dataclass
from datetime import UTC, datetime

from cv_orchestrator.jobs.models import JobType

_SEPARATOR = ":"
_UNSAFE_RESOURCE_CHARS = re.compile(r"[^A-Za-z0-9_.\-]")
_MAX_RESOURCE_CHARS = 48
NO_RESOURCE = "none"


@dataclass(slots=True, frozen=True)
class ParsedJobId:
    """Components recovered from a job id."""

    job_type: JobType
    resource_id: str | None
    created_at: datetime
    nonce: str


def generate_job_id(
    job_type: JobType,
    *,
    resource_id: str | None,
    created_at: datetime,
    nonce: str | None = None,
) -> str:
    """Build an opaque but human-inspectable job id."""

    resource = _sanitize_resource(resource_id) if resource_id else NO_RESOURCE
    epoch_ms = int(created_at.timestamp() * 1000)
    random_part = nonce or secrets.token_hex(4)
    return _SEPARATOR.join((job_type.value, resource, str(epoch_ms), random_part))


def parse_job_id(job_id: str) -> ParsedJobId:
    """Decode a job id; raises ValueError when it was not produced here."""

    parts = job_id.split(_SEPARATOR)
    if len(parts) != 4:  # noqa: PLR2004
        raise ValueError(f"Malformed job id: {job_id!r}")
    type_raw, resource, epoch_raw, nonce = parts
    try:
        job_type = JobType(type_raw)
        epoch_ms = int(epoch_raw)
    except ValueError as error:
        raise ValueError(f"Malformed job id: {job_id!r}") from error
    return ParsedJobId(
        job_type=job_type,
        resource_id=None if resource == NO_RESOURCE else resource,
        created_at=datetime.fromtimestamp(epoch_ms / 1000, tz=UTC),
        nonce=nonce,
    )


def _sanitize_resource(resource_id: str) -> str:
    cleaned = _UNSAFE_RESOURCE_CHARS.sub("-", resource_id.strip())[:_MAX_RESOURCE_CHARS]
    return cleaned or NO_RESOURCE
