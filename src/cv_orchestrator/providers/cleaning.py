"""Cleanup and schema validation of free-form provider output."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, TypeVar

from pydantic import BaseModel, ValidationError

from cv_orchestrator.errors import ErrorKind, OrchestratorError
from cv_orchestrator.metrics import MetricsCollector

ModelT = TypeVar("ModelT", bound=BaseModel)

_WRAPPING_FENCE = re.compile(r"^\s*```[A-Za-z]*[ \t]*\n?(.*?)\n?[ \t]*```\s*$", re.DOTALL)
_EMBEDDED_FENCE = re.compile(r"```(?:json|JSON)?[ \t]*\n(.*?)\n?```", re.DOTALL)
_WHITESPACE_CONTROL = re.compile(r"[\t\n\r]")
_OTHER_CONTROL = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_ROOT_PATH = "root"
_MAX_ISSUES_IN_CONTEXT = 20


@dataclass(slots=True)
class CleanedText:
    text: str
    stripped_fence: bool
    control_chars_removed: int


def strip_code_fences(text: str) -> tuple[str, bool]:
    """Unwrap a fenced block, whether it wraps the reply or sits inside prose."""

    match = _WRAPPING_FENCE.match(text)
    if match is not None:
        return match.group(1).strip(), True
    match = _EMBEDDED_FENCE.search(text)
    if match is not None:
        return match.group(1).strip(), True
    return text.strip(), False


def remove_control_characters(text: str) -> tuple[str, int]:
    """Tabs and line breaks become spaces; other control characters are dropped."""

    text, whitespace = _WHITESPACE_CONTROL.subn(" ", text)
    text, other = _OTHER_CONTROL.subn("", text)
    return text, other + whitespace


def clean_response_text(text: str) -> CleanedText:
    unfenced, stripped = strip_code_fences(text)
    cleaned, removed = remove_control_characters(unfenced)
    return CleanedText(text=cleaned.strip(), stripped_fence=stripped, control_chars_removed=removed)


def extract_json_value(text: str) -> Any:
    """Parse JSON, falling back to the outermost object/array embedded in prose."""

    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass
    for opener, closer in (("{", "}"), ("[", "]")):
        start = text.find(opener)
        end = text.rfind(closer)
        if start == -1 or end <= start:
            continue
        try:
            return json.loads(text[start : end + 1])
        except json.JSONDecodeError:
            continue
    raise ValueError("Response does not contain a JSON document.")


def parse_structured_output(
    text: str,
    model: type[ModelT],
    *,
    metrics: MetricsCollector | None = None,
    provider: str | None = None,
) -> ModelT:
    """Clean ``text`` and validate it against ``model``.

    Every failure surfaces as a non-retryable ``ai_invalid_response``; schema
    issues are also counted by field path and message.
    """

    cleaned = clean_response_text(text)
    if not cleaned.text:
        _record(metrics, _ROOT_PATH, "empty response")
        raise OrchestratorError(
            ErrorKind.AI_INVALID_RESPONSE,
            "Provider returned an empty response.",
            context={"provider": provider},
        )
    try:
        data = extract_json_value(cleaned.text)
    except ValueError as error:
        _record(metrics, _ROOT_PATH, "invalid JSON")
        raise OrchestratorError(
            ErrorKind.AI_INVALID_RESPONSE,
            str(error),
            context={"provider": provider, "preview": cleaned.text[:200]},
        ) from error

    try:
        return model.model_validate(data)
    except ValidationError as error:
        issues = [
            {"path": format_error_path(item["loc"]), "message": item["msg"]}
            for item in error.errors()
        ]
        for issue in issues:
            _record(metrics, issue["path"], issue["message"])
        raise OrchestratorError(
            ErrorKind.AI_INVALID_RESPONSE,
            f"Response failed {model.__name__} validation with {len(issues)} issue(s).",
            context={"provider": provider, "issues": issues[:_MAX_ISSUES_IN_CONTEXT]},
        ) from error


def format_error_path(loc: tuple[int | str, ...]) -> str:
    if not loc:
        return _ROOT_PATH
    return "/" + "/".join(str(part) for part in loc)


def _record(metrics: MetricsCollector | None, path: str, message: str) -> None:
    if metrics is not None:
        metrics.record_validation_failure(path, message)
