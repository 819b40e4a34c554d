"""AI-backed job handlers: prompts, output schemas and the shared execution flow."""

from __future__ import annotations

import json
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, Field

from cv_orchestrator.jobs.handlers import JobContext
from cv_orchestrator.jobs.models import JobType
from cv_orchestrator.metrics import MetricsCollector
from cv_orchestrator.providers.base import ChatMessage, GenerationOptions, MessageRole
from cv_orchestrator.providers.cleaning import parse_structured_output
from cv_orchestrator.providers.router import ProviderRouter


class PersonalInfo(BaseModel):
    name: str
    email: str | None = None
    phone: str | None = None
    location: str | None = None
    links: list[str] = Field(default_factory=list)


class ExperienceEntry(BaseModel):
    title: str
    company: str
    start_date: str | None = None
    end_date: str | None = None
    highlights: list[str] = Field(default_factory=list)


class EducationEntry(BaseModel):
    institution: str
    degree: str | None = None
    field_of_study: str | None = None
    graduation_date: str | None = None


class ParsedCv(BaseModel):
    """Structured CV extracted from raw document text."""

    personal_info: PersonalInfo
    summary: str | None = None
    experience: list[ExperienceEntry] = Field(default_factory=list)
    education: list[EducationEntry] = Field(default_factory=list)
    skills: list[str] = Field(default_factory=list)
    languages: list[str] = Field(default_factory=list)
    certifications: list[str] = Field(default_factory=list)


class AtsBreakdown(BaseModel):
    structure: int = Field(ge=0, le=40)
    skills_visibility: int = Field(ge=0, le=25)
    experience_quality: int = Field(ge=0, le=25)
    formatting_safety: int = Field(ge=0, le=10)


class AtsAnalysis(BaseModel):
    """Applicant-tracking compatibility of a CV against a job description."""

    score: int = Field(ge=0, le=100)
    breakdown: AtsBreakdown | None = None
    matched_keywords: list[str] = Field(default_factory=list)
    missing_keywords: list[str] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)


class EnhancedSection(BaseModel):
    section_type: str
    enhanced_text: str = Field(min_length=1)
    changes: list[str] = Field(default_factory=list)


class GeneratedSection(BaseModel):
    title: str
    content: str


class GeneratedCv(BaseModel):
    headline: str | None = None
    summary: str
    sections: list[GeneratedSection] = Field(min_length=1)


_JSON_ONLY_RULES = """\
Respond with a single JSON object and nothing else: no prose, no markdown fences.
The object must satisfy this JSON Schema:
{schema}
"""

PARSING_SYSTEM_PROMPT = """\
You extract structured data from CV/resume text.
Copy facts exactly as written; do not invent employers, dates or skills.
Use null for missing scalar fields and [] for missing lists.
"""

ATS_SYSTEM_PROMPT = """\
You are an applicant tracking system auditor.
Score the CV against the job description from 0 to 100, split into:
structure (max 40), skills_visibility (max 25), experience_quality (max 25)
and formatting_safety (max 10). The score is the sum of the breakdown.
List keywords from the job description found in and missing from the CV,
and give concrete recommendations.
"""

ENHANCEMENT_SYSTEM_PROMPT = """\
You improve one CV section. Keep every fact, strengthen wording with action
verbs and measurable results, and stay within the original length +20%.
List the changes you made.
"""

GENERATION_SYSTEM_PROMPT = """\
You write a complete, ATS-friendly CV from structured CV data and optional
target role information. Never add experience that is not in the input.
"""


@dataclass(slots=True, frozen=True)
class AiTaskSpec:
    """Static description of one AI job type."""

    job_type: JobType
    required_fields: tuple[str, ...]
    result_model: type[BaseModel]
    system_prompt: str
    build_user_prompt: Callable[[dict[str, Any]], str]
    temperature: float = 0.2
    max_output_tokens: int = 2048

    def system_message(self) -> str:
        schema = json.dumps(self.result_model.model_json_schema(), indent=2)
        return self.system_prompt + "\n" + _JSON_ONLY_RULES.format(schema=schema)


def _parsing_prompt(payload: dict[str, Any]) -> str:
    return f"CV text:\n<<<\n{payload['text']}\n>>>"


def _ats_prompt(payload: dict[str, Any]) -> str:
    return (
        f"Job description:\n<<<\n{payload['job_description']}\n>>>\n\n"
        f"CV:\n<<<\n{_as_text(payload['cv'])}\n>>>"
    )


def _enhancement_prompt(payload: dict[str, Any]) -> str:
    prompt = f"Section type: {payload['section_type']}\n"
    if payload.get("target_role"):
        prompt += f"Target role: {payload['target_role']}\n"
    return prompt + f"Section text:\n<<<\n{payload['section_text']}\n>>>"


def _generation_prompt(payload: dict[str, Any]) -> str:
    prompt = f"CV data:\n<<<\n{_as_text(payload['cv'])}\n>>>"
    if payload.get("target_role"):
        prompt += f"\n\nTarget role: {payload['target_role']}"
    if payload.get("job_description"):
        prompt += f"\n\nJob description:\n<<<\n{payload['job_description']}\n>>>"
    return prompt


AI_TASK_SPECS: dict[JobType, AiTaskSpec] = {
    JobType.PARSING: AiTaskSpec(
        job_type=JobType.PARSING,
        required_fields=("text",),
        result_model=ParsedCv,
        system_prompt=PARSING_SYSTEM_PROMPT,
        build_user_prompt=_parsing_prompt,
        temperature=0.0,
    ),
    JobType.ATS_ANALYSIS: AiTaskSpec(
        job_type=JobType.ATS_ANALYSIS,
        required_fields=("cv", "job_description"),
        result_model=AtsAnalysis,
        system_prompt=ATS_SYSTEM_PROMPT,
        build_user_prompt=_ats_prompt,
        temperature=0.0,
    ),
    JobType.ENHANCEMENT: AiTaskSpec(
        job_type=JobType.ENHANCEMENT,
        required_fields=("section_text", "section_type"),
        result_model=EnhancedSection,
        system_prompt=ENHANCEMENT_SYSTEM_PROMPT,
        build_user_prompt=_enhancement_prompt,
        temperature=0.4,
    ),
    JobType.GENERATION: AiTaskSpec(
        job_type=JobType.GENERATION,
        required_fields=("cv",),
        result_model=GeneratedCv,
        system_prompt=GENERATION_SYSTEM_PROMPT,
        build_user_prompt=_generation_prompt,
        temperature=0.3,
        max_output_tokens=4096,
    ),
}


class AiJobHandler:
    """Validate input, prompt the router, validate the reply, return the result."""

    def __init__(
        self,
        spec: AiTaskSpec,
        *,
        router: ProviderRouter,
        metrics: MetricsCollector,
    ) -> None:
        self.spec = spec
        self.router = router
        self.metrics = metrics

    def handle(self, context: JobContext) -> dict[str, Any]:
        context.progress("started")
        context.require(*self.spec.required_fields)
        context.progress("input_validated")

        payload = context.payload
        messages = [
            ChatMessage(MessageRole.SYSTEM, self.spec.system_message()),
            ChatMessage(MessageRole.USER, self.spec.build_user_prompt(payload)),
        ]
        options = GenerationOptions(
            model=payload.get("model"),
            temperature=self.spec.temperature,
            max_output_tokens=self.spec.max_output_tokens,
        )
        context.progress("prompt_built")

        context.progress("ai_processing")
        response = self.router.generate(
            messages,
            options,
            provider=payload.get("provider"),
            job_type=self.spec.job_type,
        )
        context.checkpoint()

        parsed = parse_structured_output(
            response.text,
            self.spec.result_model,
            metrics=self.metrics,
            provider=response.provider,
        )
        context.progress("validation_complete")
        context.progress("saving")
        return {
            "data": parsed.model_dump(mode="json"),
            "provider": response.provider,
            "model": response.model,
            "attempted_providers": list(response.attempted),
            "elapsed_ms": round(response.elapsed_seconds * 1000, 1),
        }


def build_ai_handlers(
    *,
    router: ProviderRouter,
    metrics: MetricsCollector,
) -> dict[JobType, AiJobHandler]:
    return {
        job_type: AiJobHandler(spec, router=router, metrics=metrics)
        for job_type, spec in AI_TASK_SPECS.items()
    }


def _as_text(value: object) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False, indent=2, sort_keys=True)
