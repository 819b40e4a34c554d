"""Provider interface shared by all AI text-generation backends."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Protocol


class MessageRole(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


@dataclass(slots=True, frozen=True)
class ChatMessage:
    """One role-tagged message of a generation request."""

    role: MessageRole
    content: str


@dataclass(slots=True, frozen=True)
class GenerationOptions:
    """Caller-controlled generation knobs."""

    model: str | None = None
    temperature: float = 0.2
    max_output_tokens: int = 2048
    json_mode: bool = True


@dataclass(slots=True, frozen=True)
class ProviderDescriptor:
    """Static provider configuration loaded once at process start."""

    name: str
    model: str
    timeout_seconds: float
    fallback_position: int
    base_url: str
    api_key: str | None = field(default=None, repr=False)


@dataclass(slots=True, frozen=True)
class ProviderRequest:
    """Fully resolved request handed to one concrete provider."""

    messages: tuple[ChatMessage, ...]
    model: str
    temperature: float
    max_output_tokens: int
    json_mode: bool
    timeout_seconds: float


@dataclass(slots=True, frozen=True)
class ProviderResponse:
    """Generated text plus routing diagnostics."""

    text: str
    provider: str
    model: str
    elapsed_seconds: float
    attempted: tuple[str, ...] = ()


class AiProvider(Protocol):
    """Protocol implemented by provider backends.

    ``generate`` returns raw text or raises ``OrchestratorError`` with one of the
    AI error kinds; anything else is normalized by the router.
    """

    name: str

    def generate(self, request: ProviderRequest) -> str:
        """Run one generation call."""

    def close(self) -> None:
        """Release transport resources."""
