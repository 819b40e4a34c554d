"""Provider selection, wall-clock timeouts, error normalization and fallback."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Mapping, Sequence
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError

import httpx

from cv_orchestrator.config import ProviderSettings
from cv_orchestrator.errors import ErrorKind, OrchestratorError
from cv_orchestrator.jobs.models import JobType
from cv_orchestrator.providers.base import (
    AiProvider,
    ChatMessage,
    GenerationOptions,
    ProviderDescriptor,
    ProviderRequest,
    ProviderResponse,
)
from cv_orchestrator.providers.circuit_breaker import CircuitBreaker
from cv_orchestrator.providers.echo import EchoProvider
from cv_orchestrator.providers.http_providers import (
    AnthropicProvider,
    GeminiProvider,
    OllamaProvider,
    OpenAiProvider,
)

_FALLBACK_KINDS = frozenset({ErrorKind.AI_SERVICE, ErrorKind.AI_TIMEOUT})
_BREAKER_KINDS = frozenset({ErrorKind.AI_SERVICE, ErrorKind.AI_TIMEOUT})


def build_provider(
    descriptor: ProviderDescriptor,
    *,
    transport: httpx.BaseTransport | None = None,
) -> AiProvider:
    """Instantiate the backend named by ``descriptor``."""

    if descriptor.name == "openai":
        return OpenAiProvider(descriptor, transport=transport)
    if descriptor.name == "anthropic":
        return AnthropicProvider(descriptor, transport=transport)
    if descriptor.name == "gemini":
        return GeminiProvider(descriptor, transport=transport)
    if descriptor.name == "ollama":
        return OllamaProvider(descriptor, transport=transport)
    if descriptor.name == "echo":
        return EchoProvider(descriptor)
    raise ValueError(f"Unsupported provider: {descriptor.name!r}")


class ProviderRouter:
    """Uniform ``generate`` over the configured providers.

    Each call runs on the router's own thread pool so the wall-clock budget
    from the provider descriptor holds even when the transport stalls; an
    abandoned call keeps its pool thread until the transport gives up.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        descriptors: Sequence[ProviderDescriptor],
        providers: Mapping[str, AiProvider],
        default_provider: str,
        type_providers: Mapping[str, str] | None = None,
        fallback_enabled: bool = False,
        call_pool_size: int = 8,
        breaker_factory: Callable[[str], CircuitBreaker] | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.descriptors = {d.name: d for d in descriptors}
        missing = set(self.descriptors) - set(providers)
        if missing:
            raise ValueError(f"No provider instance for: {', '.join(sorted(missing))}")
        if default_provider not in self.descriptors:
            raise ValueError(f"Default provider {default_provider!r} is not configured")
        self.providers = dict(providers)
        self.default_provider = default_provider
        self.type_providers = dict(type_providers or {})
        self.fallback_enabled = fallback_enabled
        make_breaker = breaker_factory or (lambda name: CircuitBreaker(name))
        self.breakers = {name: make_breaker(name) for name in self.descriptors}
        self._logger = logger or logging.getLogger(__name__)
        self._pool = ThreadPoolExecutor(
            max_workers=call_pool_size,
            thread_name_prefix="ai-call",
        )

    @classmethod
    def from_settings(
        cls,
        settings: ProviderSettings,
        *,
        transport: httpx.BaseTransport | None = None,
        providers: Mapping[str, AiProvider] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> ProviderRouter:
        instances = dict(providers or {})
        for descriptor in settings.descriptors:
            if descriptor.name not in instances:
                instances[descriptor.name] = build_provider(descriptor, transport=transport)
        return cls(
            descriptors=settings.descriptors,
            providers=instances,
            default_provider=settings.default_provider,
            type_providers=settings.type_providers,
            fallback_enabled=settings.fallback_enabled,
            call_pool_size=settings.call_pool_size,
            breaker_factory=lambda name: CircuitBreaker(
                name,
                failure_threshold=settings.circuit_failure_threshold,
                reset_seconds=settings.circuit_reset_seconds,
                half_open_successes=settings.circuit_half_open_successes,
                clock=clock,
            ),
        )

    def select_provider(self, *, provider: str | None, job_type: JobType | None) -> str:
        """Explicit request, else the job type default, else the global default."""

        if provider is not None:
            name = provider.strip().lower()
            if name not in self.descriptors:
                raise OrchestratorError(
                    ErrorKind.VALIDATION,
                    f"Unknown AI provider: {provider!r}",
                    context={"configured": sorted(self.descriptors)},
                )
            return name
        if job_type is not None:
            mapped = self.type_providers.get(job_type.value)
            if mapped in self.descriptors:
                return mapped
        return self.default_provider

    def chain_for(self, primary: str) -> list[str]:
        if not self.fallback_enabled:
            return [primary]
        ordered = sorted(self.descriptors.values(), key=lambda d: d.fallback_position)
        return [primary, *(d.name for d in ordered if d.name != primary)]

    def generate(
        self,
        messages: Sequence[ChatMessage],
        options: GenerationOptions | None = None,
        *,
        provider: str | None = None,
        job_type: JobType | None = None,
    ) -> ProviderResponse:
        if not messages:
            raise OrchestratorError(ErrorKind.VALIDATION, "At least one message is required.")
        options = options or GenerationOptions()
        primary = self.select_provider(provider=provider, job_type=job_type)
        attempted: list[str] = []
        last_error: OrchestratorError | None = None

        for name in self.chain_for(primary):
            attempted.append(name)
            started = time.monotonic()
            try:
                text = self._call(name, messages, options)
            except OrchestratorError as error:
                last_error = error
                if error.kind not in _FALLBACK_KINDS:
                    break
                self._logger.warning(
                    "Provider %s failed with %s: %s",
                    name,
                    error.kind.value,
                    error.message,
                )
                continue
            return ProviderResponse(
                text=text,
                provider=name,
                model=options.model or self.descriptors[name].model,
                elapsed_seconds=time.monotonic() - started,
                attempted=tuple(attempted),
            )

        if last_error is None:
            raise OrchestratorError(
                ErrorKind.INTERNAL,
                f"No provider in the fallback chain of {primary!r} was attempted.",
            )
        last_error.context.setdefault("attempted", list(attempted))
        raise last_error

    def close(self) -> None:
        self._pool.shutdown(wait=False, cancel_futures=True)
        for provider in self.providers.values():
            provider.close()

    def _call(
        self,
        name: str,
        messages: Sequence[ChatMessage],
        options: GenerationOptions,
    ) -> str:
        descriptor = self.descriptors[name]
        breaker = self.breakers[name]
        if not breaker.allow_request():
            raise OrchestratorError(
                ErrorKind.AI_SERVICE,
                f"Circuit for provider {name} is open.",
                retryable=True,
                context={"provider": name, "circuit": "open"},
            )
        request = ProviderRequest(
            messages=tuple(messages),
            model=options.model or descriptor.model,
            temperature=options.temperature,
            max_output_tokens=options.max_output_tokens,
            json_mode=options.json_mode,
            timeout_seconds=descriptor.timeout_seconds,
        )
        future: Future[str] = self._pool.submit(self.providers[name].generate, request)
        try:
            text = future.result(timeout=descriptor.timeout_seconds)
        except FutureTimeoutError as error:
            future.cancel()
            breaker.record_failure()
            raise OrchestratorError(
                ErrorKind.AI_TIMEOUT,
                f"Provider {name} exceeded its {descriptor.timeout_seconds:g}s budget.",
                context={"provider": name},
            ) from error
        except OrchestratorError as error:
            if error.kind in _BREAKER_KINDS:
                breaker.record_failure()
            raise
        except Exception as error:  # noqa: BLE001
            breaker.record_failure()
            raise OrchestratorError(
                ErrorKind.AI_SERVICE,
                f"Provider {name} failed: {error}",
                context={"provider": name, "exception": type(error).__name__},
            ) from error
        breaker.record_success()
        return text
