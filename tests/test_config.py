from __future__ import annotations

from dataclasses import replace
from pathlib import Path

import allure
import pytest

from cv_orchestrator.config import (
    ProviderSettings,
    RetrySettings,
    SchedulerSettings,
    Settings,
    WebhookSettings,
    default_descriptor,
)
from cv_orchestrator.jobs.models import JobType

pytestmark = [
    allure.epic("Configuration"),
    allure.feature("Settings"),
]


def test_from_env_reads_scheduler_and_retry_settings(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CV_ORCH_WORKER_POOL_SIZE", "8")
    monkeypatch.setenv("CV_ORCH_TIER_LIMITS", "pro=5")
    monkeypatch.setenv("CV_ORCH_USER_TIERS", "alice=PRO, bob=enterprise")
    monkeypatch.setenv("CV_ORCH_TYPE_TIMEOUTS", "parsing=120")
    monkeypatch.setenv("CV_ORCH_RETRY_STRATEGY", "Linear")
    monkeypatch.setenv("CV_ORCH_TYPE_MAX_RETRIES", "generation=1")
    monkeypatch.setenv("CV_ORCH_WEBHOOK_ALLOW_INSECURE", "yes")

    settings = Settings.from_env(db_path=Path("/tmp/jobs.db"))

    assert settings.db_path == Path("/tmp/jobs.db")
    assert settings.scheduler.worker_pool_size == 8
    assert settings.scheduler.tier_limits == {"free": 1, "pro": 5, "enterprise": 10}
    assert settings.scheduler.user_tiers == {"alice": "pro", "bob": "enterprise"}
    assert settings.scheduler.timeout_for(JobType.PARSING) == 120
    assert settings.scheduler.timeout_for(JobType.GENERATION) == 600
    assert settings.retry.strategy == "linear"
    assert settings.retry.max_retries_for(JobType.GENERATION) == 1
    assert settings.retry.max_retries_for(JobType.PARSING) == 3
    assert settings.webhooks.allow_insecure is True
    settings.validate()


def test_from_env_builds_provider_chain(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CV_ORCH_AI_PROVIDERS", "OpenAI, anthropic, openai")
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    monkeypatch.setenv("CV_ORCH_AI_ANTHROPIC_MODEL", "claude-custom")
    monkeypatch.setenv("CV_ORCH_AI_OPENAI_BASE_URL", "https://proxy.example.com/v1/")
    monkeypatch.setenv("CV_ORCH_AI_TYPE_PROVIDERS", "ats_analysis=anthropic")
    monkeypatch.setenv("CV_ORCH_AI_FALLBACK_ENABLED", "true")

    providers = Settings.from_env().providers

    assert [d.name for d in providers.descriptors] == ["openai", "anthropic"]
    assert [d.fallback_position for d in providers.descriptors] == [0, 1]
    openai, anthropic = providers.descriptors
    assert openai.api_key == "sk-test"
    assert openai.base_url == "https://proxy.example.com/v1"
    assert anthropic.model == "claude-custom"
    assert providers.default_provider == "openai"
    assert providers.type_providers == {"ats_analysis": "anthropic"}
    assert providers.fallback_enabled is True


def test_from_env_rejects_unknown_provider(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CV_ORCH_AI_PROVIDERS", "openai,skynet")

    with pytest.raises(ValueError, match="Unsupported provider"):
        Settings.from_env()


def test_from_env_rejects_malformed_mapping(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CV_ORCH_TIER_LIMITS", "pro")

    with pytest.raises(ValueError, match="Expected format"):
        Settings.from_env()


def test_from_env_rejects_non_integer_mapping_value(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CV_ORCH_TIER_LIMITS", "pro=many")

    with pytest.raises(ValueError, match="Invalid CV_ORCH_TIER_LIMITS value"):
        Settings.from_env()


def test_from_env_rejects_invalid_boolean(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CV_ORCH_AI_FALLBACK_ENABLED", "sometimes")

    with pytest.raises(ValueError, match="Invalid boolean value"):
        Settings.from_env()


def test_defaults_are_valid() -> None:
    Settings().validate()


def _echo_settings(**overrides: object) -> Settings:
    settings = Settings(
        providers=ProviderSettings(
            descriptors=(default_descriptor("echo", position=0),),
            default_provider="echo",
        ),
    )
    return replace(settings, **overrides)  # type: ignore[arg-type]


@pytest.mark.parametrize(
    ("overrides", "message"),
    [
        ({"scheduler": SchedulerSettings(worker_pool_size=0)}, "WORKER_POOL_SIZE"),
        ({"scheduler": SchedulerSettings(tier_limits={"free": 0})}, "must be positive"),
        ({"scheduler": SchedulerSettings(default_tier="gold")}, "not a configured tier"),
        ({"scheduler": SchedulerSettings(user_tiers={"ann": "gold"})}, "Unknown tier"),
        ({"scheduler": SchedulerSettings(type_timeouts={"faxing": 10})}, "Unknown job type"),
        ({"retry": RetrySettings(strategy="random")}, "RETRY_STRATEGY"),
        ({"retry": RetrySettings(max_retries=11)}, "within 0..10"),
        ({"retry": RetrySettings(type_max_retries={"parsing": -1})}, "within 0..10"),
        ({"retry": RetrySettings(base_delay_seconds=0)}, "0 < base <= max"),
        ({"retry": RetrySettings(jitter_ratio=1.0)}, "JITTER_RATIO"),
        ({"webhooks": WebhookSettings(max_attempts=0)}, "WEBHOOK_MAX_ATTEMPTS"),
        ({"webhooks": WebhookSettings(max_attempts=12)}, "WEBHOOK_MAX_ATTEMPTS"),
    ],
)
def test_validate_rejects_bad_values(overrides: dict[str, object], message: str) -> None:
    with pytest.raises(ValueError, match=message):
        _echo_settings(**overrides).validate()


def test_validate_requires_configured_default_provider() -> None:
    settings = Settings(
        providers=ProviderSettings(
            descriptors=(default_descriptor("echo", position=0),),
            default_provider="openai",
        ),
    )

    with pytest.raises(ValueError, match="Default provider 'openai'"):
        settings.validate()


def test_validate_requires_configured_type_provider() -> None:
    settings = Settings(
        providers=ProviderSettings(
            descriptors=(default_descriptor("echo", position=0),),
            default_provider="echo",
            type_providers={"parsing": "gemini"},
        ),
    )

    with pytest.raises(ValueError, match="Provider 'gemini'"):
        settings.validate()
