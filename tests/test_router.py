from __future__ import annotations

import threading

import allure
import pytest

from cv_orchestrator.config import ProviderSettings
from cv_orchestrator.errors import ErrorKind, OrchestratorError
from cv_orchestrator.jobs.models import JobType
from cv_orchestrator.providers.base import ChatMessage, GenerationOptions, MessageRole
from cv_orchestrator.providers.circuit_breaker import CircuitBreaker, CircuitState
from cv_orchestrator.providers.echo import EchoProvider
from cv_orchestrator.providers.router import ProviderRouter, build_provider
from conftest import FakeClock, ScriptedProvider, descriptor

pytestmark = [
    allure.epic("AI Providers"),
    allure.feature("Provider Router"),
]

MESSAGES = [
    ChatMessage(MessageRole.SYSTEM, "Return JSON."),
    ChatMessage(MessageRole.USER, "hello"),
]


def _router(
    providers: dict[str, ScriptedProvider],
    *,
    fallback: bool = False,
    type_providers: dict[str, str] | None = None,
    timeouts: dict[str, float] | None = None,
    breaker_factory=None,
) -> ProviderRouter:
    timeouts = timeouts or {}
    descriptors = [
        descriptor(name, position=position, timeout=timeouts.get(name, 5.0))
        for position, name in enumerate(providers)
    ]
    return ProviderRouter(
        descriptors=descriptors,
        providers=providers,
        default_provider=descriptors[0].name,
        type_providers=type_providers,
        fallback_enabled=fallback,
        breaker_factory=breaker_factory,
    )


def test_selection_prefers_explicit_then_type_then_default() -> None:
    router = _router(
        {"a": ScriptedProvider("a"), "b": ScriptedProvider("b"), "c": ScriptedProvider("c")},
        type_providers={"ats_analysis": "b"},
    )

    assert router.select_provider(provider="C", job_type=JobType.ATS_ANALYSIS) == "c"
    assert router.select_provider(provider=None, job_type=JobType.ATS_ANALYSIS) == "b"
    assert router.select_provider(provider=None, job_type=JobType.PARSING) == "a"
    router.close()


def test_unknown_explicit_provider_is_rejected() -> None:
    router = _router({"a": ScriptedProvider("a")})

    with pytest.raises(OrchestratorError) as raised:
        router.generate(MESSAGES, provider="nope")

    assert raised.value.kind == ErrorKind.VALIDATION
    assert raised.value.context["configured"] == ["a"]
    router.close()


def test_generate_returns_text_and_diagnostics() -> None:
    provider = ScriptedProvider("a", default="{}")
    router = _router({"a": provider})

    response = router.generate(MESSAGES, GenerationOptions(model="custom", temperature=0.7))

    assert response.text == "{}"
    assert response.provider == "a"
    assert response.model == "custom"
    assert response.attempted == ("a",)
    request = provider.requests[0]
    assert request.model == "custom"
    assert request.temperature == 0.7
    assert request.timeout_seconds == 5.0
    router.close()


def test_empty_messages_are_rejected() -> None:
    router = _router({"a": ScriptedProvider("a")})

    with pytest.raises(OrchestratorError) as raised:
        router.generate([])

    assert raised.value.kind == ErrorKind.VALIDATION
    router.close()


def test_empty_chain_is_an_internal_error(monkeypatch: pytest.MonkeyPatch) -> None:
    primary = ScriptedProvider("a")
    router = _router({"a": primary})
    monkeypatch.setattr(router, "chain_for", lambda _primary: [])

    with pytest.raises(OrchestratorError) as raised:
        router.generate(MESSAGES)

    assert raised.value.kind == ErrorKind.INTERNAL
    assert primary.requests == []
    router.close()


def test_wall_clock_timeout_raises_ai_timeout() -> None:
    release = threading.Event()

    def _stall(_request):
        release.wait(5)
        return "{}"

    router = _router({"slow": ScriptedProvider("slow", [_stall])}, timeouts={"slow": 0.05})
    try:
        with pytest.raises(OrchestratorError) as raised:
            router.generate(MESSAGES)
    finally:
        release.set()
        router.close()

    assert raised.value.kind == ErrorKind.AI_TIMEOUT
    assert raised.value.retryable is True
    assert raised.value.context["attempted"] == ["slow"]


def test_unexpected_exception_becomes_ai_service() -> None:
    router = _router({"a": ScriptedProvider("a", [KeyError("choices")])})

    with pytest.raises(OrchestratorError) as raised:
        router.generate(MESSAGES)

    assert raised.value.kind == ErrorKind.AI_SERVICE
    assert raised.value.context["exception"] == "KeyError"
    router.close()


def test_fallback_walks_chain_on_service_errors() -> None:
    primary = ScriptedProvider("a", [OrchestratorError(ErrorKind.AI_SERVICE, "503")])
    secondary = ScriptedProvider("b", [OrchestratorError(ErrorKind.AI_TIMEOUT, "slow")])
    tertiary = ScriptedProvider("c", default='{"ok": true}')
    router = _router({"a": primary, "b": secondary, "c": tertiary}, fallback=True)

    response = router.generate(MESSAGES)

    assert response.provider == "c"
    assert response.attempted == ("a", "b", "c")
    router.close()


def test_fallback_stops_on_non_fallback_error() -> None:
    primary = ScriptedProvider(
        "a",
        [OrchestratorError(ErrorKind.AI_QUOTA_EXCEEDED, "quota", context={"provider": "a"})],
    )
    secondary = ScriptedProvider("b")
    router = _router({"a": primary, "b": secondary}, fallback=True)

    with pytest.raises(OrchestratorError) as raised:
        router.generate(MESSAGES)

    assert raised.value.kind == ErrorKind.AI_QUOTA_EXCEEDED
    assert raised.value.context["attempted"] == ["a"]
    assert secondary.requests == []
    router.close()


def test_without_fallback_only_primary_is_tried() -> None:
    primary = ScriptedProvider("a", [OrchestratorError(ErrorKind.AI_SERVICE, "503")])
    secondary = ScriptedProvider("b")
    router = _router({"a": primary, "b": secondary})

    with pytest.raises(OrchestratorError):
        router.generate(MESSAGES)

    assert secondary.requests == []
    router.close()


def test_open_circuit_skips_provider() -> None:
    clock = FakeClock()
    primary = ScriptedProvider(
        "a",
        [OrchestratorError(ErrorKind.AI_SERVICE, "503") for _ in range(2)],
    )
    router = _router(
        {"a": primary},
        breaker_factory=lambda name: CircuitBreaker(
            name,
            failure_threshold=2,
            reset_seconds=30,
            clock=clock.monotonic,
        ),
    )

    for _ in range(2):
        with pytest.raises(OrchestratorError):
            router.generate(MESSAGES)
    assert router.breakers["a"].state == CircuitState.OPEN

    with pytest.raises(OrchestratorError) as raised:
        router.generate(MESSAGES)

    assert raised.value.context["circuit"] == "open"
    assert len(primary.requests) == 2

    clock.advance(31)
    assert router.generate(MESSAGES).provider == "a"
    router.close()


def test_from_settings_builds_missing_providers() -> None:
    settings = ProviderSettings(
        descriptors=(descriptor("echo", position=0),),
        default_provider="echo",
    )

    router = ProviderRouter.from_settings(settings)

    assert isinstance(router.providers["echo"], EchoProvider)
    assert router.generate(MESSAGES).text == "hello"
    router.close()


def test_build_provider_rejects_unknown_names() -> None:
    with pytest.raises(ValueError, match="Unsupported provider"):
        build_provider(descriptor("mystery"))


def test_close_releases_providers() -> None:
    provider = ScriptedProvider("a")
    router = _router({"a": provider})

    router.close()

    assert provider.closed is True
