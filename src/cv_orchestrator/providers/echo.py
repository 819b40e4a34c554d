"""Deterministic local provider for demos and tests."""

from __future__ import annotations

from cv_orchestrator.providers.base import MessageRole, ProviderDescriptor, ProviderRequest


class EchoProvider:
    """Returns the last user message unchanged."""

    def __init__(self, descriptor: ProviderDescriptor | None = None) -> None:
        self.name = descriptor.name if descriptor is not None else "echo"

    def generate(self, request: ProviderRequest) -> str:
        for message in reversed(request.messages):
            if message.role == MessageRole.USER:
                return message.content
        return ""

    def close(self) -> None:
        return None
