"""HTTP chat-completion backends for hosted and local AI providers."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from cv_orchestrator.errors import ErrorKind, OrchestratorError
from cv_orchestrator.providers.base import (
    MessageRole,
    ProviderDescriptor,
    ProviderRequest,
)
from cv_orchestrator.providers.failure_classifier import classify_provider_failure

logger = logging.getLogger(__name__)

ANTHROPIC_API_VERSION = "2023-06-01"
_ERROR_BODY_PREVIEW = 500


class HttpChatProvider:
    """Shared transport and failure mapping for JSON-over-HTTP providers.

    Subclasses build the request body and pull generated text out of the
    response; everything else (timeouts, status classification, bad JSON)
    is normalized here.
    """

    name = "http"

    def __init__(
        self,
        descriptor: ProviderDescriptor,
        *,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.descriptor = descriptor
        self.name = descriptor.name
        self._client = httpx.Client(
            base_url=descriptor.base_url,
            timeout=httpx.Timeout(descriptor.timeout_seconds, connect=10.0),
            headers=self.default_headers(),
            transport=transport,
        )

    def default_headers(self) -> dict[str, str]:
        return {"Content-Type": "application/json"}

    def generate(self, request: ProviderRequest) -> str:
        path, params = self.endpoint(request)
        data = self._post(path, self.build_body(request), params=params, request=request)
        text = self.extract_text(data)
        if not text or not text.strip():
            raise OrchestratorError(
                ErrorKind.AI_INVALID_RESPONSE,
                f"{self.name} returned no generated text.",
                context={"provider": self.name},
            )
        return text

    def endpoint(self, request: ProviderRequest) -> tuple[str, dict[str, str] | None]:
        raise NotImplementedError

    def build_body(self, request: ProviderRequest) -> dict[str, Any]:
        raise NotImplementedError

    def extract_text(self, data: Any) -> str | None:
        raise NotImplementedError

    def close(self) -> None:
        self._client.close()

    def _post(
        self,
        path: str,
        body: dict[str, Any],
        *,
        params: dict[str, str] | None,
        request: ProviderRequest,
    ) -> Any:
        try:
            response = self._client.post(
                path,
                json=body,
                params=params,
                timeout=request.timeout_seconds,
            )
        except httpx.TimeoutException as error:
            raise OrchestratorError(
                ErrorKind.AI_TIMEOUT,
                f"{self.name} request timed out after {request.timeout_seconds:g}s.",
                context={"provider": self.name},
            ) from error
        except httpx.HTTPError as error:
            logger.warning("Transport error calling %s: %s", self.name, error)
            raise OrchestratorError(
                ErrorKind.AI_SERVICE,
                f"{self.name} transport error: {error}",
                retryable=True,
                context={"provider": self.name},
            ) from error

        if not response.is_success:
            body_text = response.text[:_ERROR_BODY_PREVIEW]
            classification = classify_provider_failure(
                provider=self.name,
                status_code=response.status_code,
                body=body_text,
            )
            logger.warning(
                "%s responded HTTP %d (%s)",
                self.name,
                response.status_code,
                classification.reason_code,
            )
            raise classification.to_error(
                provider=self.name,
                message=f"{self.name} responded HTTP {response.status_code}: {body_text}",
                status_code=response.status_code,
                retry_after_seconds=parse_retry_after(response.headers.get("retry-after")),
            )

        try:
            return response.json()
        except ValueError as error:
            raise OrchestratorError(
                ErrorKind.AI_INVALID_RESPONSE,
                f"{self.name} returned a non-JSON body.",
                context={"provider": self.name},
            ) from error


class OpenAiProvider(HttpChatProvider):
    def default_headers(self) -> dict[str, str]:
        headers = super().default_headers()
        if self.descriptor.api_key:
            headers["Authorization"] = f"Bearer {self.descriptor.api_key}"
        return headers

    def endpoint(self, request: ProviderRequest) -> tuple[str, dict[str, str] | None]:
        return "/chat/completions", None

    def build_body(self, request: ProviderRequest) -> dict[str, Any]:
        body: dict[str, Any] = {
            "model": request.model,
            "messages": [{"role": m.role.value, "content": m.content} for m in request.messages],
            "temperature": request.temperature,
            "max_tokens": request.max_output_tokens,
        }
        if request.json_mode:
            body["response_format"] = {"type": "json_object"}
        return body

    def extract_text(self, data: Any) -> str | None:
        try:
            return data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError):
            return None


class AnthropicProvider(HttpChatProvider):
    def default_headers(self) -> dict[str, str]:
        headers = super().default_headers()
        headers["anthropic-version"] = ANTHROPIC_API_VERSION
        if self.descriptor.api_key:
            headers["x-api-key"] = self.descriptor.api_key
        return headers

    def endpoint(self, request: ProviderRequest) -> tuple[str, dict[str, str] | None]:
        return "/messages", None

    def build_body(self, request: ProviderRequest) -> dict[str, Any]:
        system = "\n\n".join(
            m.content for m in request.messages if m.role == MessageRole.SYSTEM
        )
        body: dict[str, Any] = {
            "model": request.model,
            "max_tokens": request.max_output_tokens,
            "temperature": request.temperature,
            "messages": [
                {"role": m.role.value, "content": m.content}
                for m in request.messages
                if m.role != MessageRole.SYSTEM
            ],
        }
        if system:
            body["system"] = system
        return body

    def extract_text(self, data: Any) -> str | None:
        if not isinstance(data, dict):
            return None
        parts = [
            block.get("text", "")
            for block in data.get("content") or []
            if isinstance(block, dict) and block.get("type", "text") == "text"
        ]
        return "".join(parts) or None


class GeminiProvider(HttpChatProvider):
    def endpoint(self, request: ProviderRequest) -> tuple[str, dict[str, str] | None]:
        params = {"key": self.descriptor.api_key} if self.descriptor.api_key else None
        return f"/models/{request.model}:generateContent", params

    def build_body(self, request: ProviderRequest) -> dict[str, Any]:
        system = "\n\n".join(
            m.content for m in request.messages if m.role == MessageRole.SYSTEM
        )
        generation_config: dict[str, Any] = {
            "temperature": request.temperature,
            "maxOutputTokens": request.max_output_tokens,
        }
        if request.json_mode:
            generation_config["responseMimeType"] = "application/json"
        body: dict[str, Any] = {
            "contents": [
                {
                    "role": "model" if m.role == MessageRole.ASSISTANT else "user",
                    "parts": [{"text": m.content}],
                }
                for m in request.messages
                if m.role != MessageRole.SYSTEM
            ],
            "generationConfig": generation_config,
        }
        if system:
            body["systemInstruction"] = {"parts": [{"text": system}]}
        return body

    def extract_text(self, data: Any) -> str | None:
        try:
            parts = data["candidates"][0]["content"]["parts"]
        except (KeyError, IndexError, TypeError):
            return None
        return "".join(part.get("text", "") for part in parts if isinstance(part, dict)) or None


class OllamaProvider(HttpChatProvider):
    def endpoint(self, request: ProviderRequest) -> tuple[str, dict[str, str] | None]:
        return "/api/chat", None

    def build_body(self, request: ProviderRequest) -> dict[str, Any]:
        body: dict[str, Any] = {
            "model": request.model,
            "messages": [{"role": m.role.value, "content": m.content} for m in request.messages],
            "stream": False,
            "options": {
                "temperature": request.temperature,
                "num_predict": request.max_output_tokens,
            },
        }
        if request.json_mode:
            body["format"] = "json"
        return body

    def extract_text(self, data: Any) -> str | None:
        try:
            return data["message"]["content"]
        except (KeyError, TypeError):
            return None


def parse_retry_after(raw: str | None) -> float | None:
    """Seconds from a ``Retry-After`` header; HTTP-date values are ignored."""

    if raw is None:
        return None
    try:
        value = float(raw.strip())
    except ValueError:
        return None
    return value if value >= 0 else None
