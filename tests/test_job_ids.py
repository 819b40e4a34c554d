from __future__ import annotations

from datetime import UTC, datetime

import allure
import pytest

from cv_orchestrator.jobs.ids import generate_job_id, parse_job_id
from cv_orchestrator.jobs.models import JobType

pytestmark = [
    allure.epic("Persistence"),
    allure.feature("Job Identifiers"),
]

CREATED = datetime(2026, 10, 19, 9, 0, tzinfo=UTC)


def test_job_id_is_human_inspectable() -> None:
    job_id = generate_job_id(
        JobType.ATS_ANALYSIS,
        resource_id="resume 7/v2",
        created_at=CREATED,
        nonce="abcd1234",
    )

    assert job_id == "ats_analysis:resume-7-v2:1792400400000:abcd1234"

    parsed = parse_job_id(job_id)
    assert parsed.job_type == JobType.ATS_ANALYSIS
    assert parsed.resource_id == "resume-7-v2"
    assert parsed.created_at == CREATED
    assert parsed.nonce == "abcd1234"


def test_missing_resource_uses_placeholder() -> None:
    job_id = generate_job_id(JobType.PARSING, resource_id=None, created_at=CREATED)

    assert job_id.startswith("parsing:none:1792400400000:")
    assert parse_job_id(job_id).resource_id is None


def test_random_part_differs_between_ids() -> None:
    ids = {
        generate_job_id(JobType.PARSING, resource_id="cv", created_at=CREATED) for _ in range(20)
    }

    assert len(ids) == 20


def test_long_resource_ids_are_truncated() -> None:
    job_id = generate_job_id(JobType.PARSING, resource_id="x" * 200, created_at=CREATED)

    assert job_id.split(":")[1] == "x" * 48


@pytest.mark.parametrize(
    "job_id",
    ["parsing:cv:123", "faxing:cv:123:abc", "parsing:cv:yesterday:abc", "a:b:c:d:e"],
)
def test_parse_rejects_foreign_ids(job_id: str) -> None:
    with pytest.raises(ValueError, match="Malformed job id"):
        parse_job_id(job_id)
