"""Runtime configuration for the job orchestration engine."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from cv_orchestrator.jobs.models import JobType
from cv_orchestrator.providers.base import ProviderDescriptor

MAX_RETRIES_CEILING = 10
RETRY_STRATEGIES = ("exponential", "linear", "fixed")
DEFAULT_TIER_LIMITS: dict[str, int] = {"free": 1, "pro": 3, "enterprise": 10}
DEFAULT_TYPE_TIMEOUTS: dict[str, int] = {
    JobType.PARSING.value: 300,
    JobType.GENERATION.value: 600,
    JobType.ENHANCEMENT.value: 300,
    JobType.ATS_ANALYSIS.value: 300,
    JobType.WEBHOOK_DELIVERY.value: 60,
    JobType.EMAIL_NOTIFICATION.value: 60,
    JobType.DOCUMENT_EXPORT.value: 600,
}
SUPPORTED_PROVIDERS = ("openai", "anthropic", "gemini", "ollama", "echo")
_PROVIDER_DEFAULTS: dict[str, tuple[str, str, float]] = {
    "openai": ("gpt-4o-mini", "https://api.openai.com/v1", 60.0),
    "anthropic": ("claude-3-5-haiku-latest", "https://api.anthropic.com/v1", 60.0),
    "gemini": ("gemini-1.5-flash", "https://generativelanguage.googleapis.com/v1beta", 60.0),
    "ollama": ("llama3.1", "http://localhost:11434", 120.0),
    "echo": ("echo", "", 5.0),
}
_PROVIDER_API_KEY_ENV = {
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
    "gemini": "GEMINI_API_KEY",
}


@dataclass(slots=True, frozen=True)
class SchedulerSettings:
    """Worker pool, admission and watchdog settings."""

    worker_pool_size: int = 4
    tick_interval_seconds: float = 1.0
    admission_batch_size: int = 100
    tier_limits: dict[str, int] = field(default_factory=lambda: dict(DEFAULT_TIER_LIMITS))
    user_tiers: dict[str, str] = field(default_factory=dict)
    default_tier: str = "free"
    type_timeouts: dict[str, int] = field(default_factory=lambda: dict(DEFAULT_TYPE_TIMEOUTS))
    queued_timeout_seconds: int = 3_600
    unlimited_types: tuple[str, ...] = (
        JobType.WEBHOOK_DELIVERY.value,
        JobType.EMAIL_NOTIFICATION.value,
    )
    worker_id: str = "worker-local"

    def timeout_for(self, job_type: JobType) -> int:
        return self.type_timeouts.get(job_type.value, DEFAULT_TYPE_TIMEOUTS[job_type.value])


@dataclass(slots=True, frozen=True)
class RetrySettings:
    """Default retry policy applied to job types without an override."""

    max_retries: int = 3
    strategy: str = "exponential"
    base_delay_seconds: float = 30.0
    multiplier: float = 2.0
    max_delay_seconds: float = 900.0
    jitter_ratio: float = 0.2
    type_max_retries: dict[str, int] = field(default_factory=dict)

    def max_retries_for(self, job_type: JobType) -> int:
        return self.type_max_retries.get(job_type.value, self.max_retries)


@dataclass(slots=True, frozen=True)
class ProviderSettings:
    """AI provider descriptors and routing defaults."""

    descriptors: tuple[ProviderDescriptor, ...] = field(
        default_factory=lambda: (default_descriptor("ollama", position=0),),
    )
    default_provider: str = "ollama"
    type_providers: dict[str, str] = field(default_factory=dict)
    fallback_enabled: bool = False
    call_pool_size: int = 8
    circuit_failure_threshold: int = 5
    circuit_reset_seconds: float = 60.0
    circuit_half_open_successes: int = 2


@dataclass(slots=True, frozen=True)
class WebhookSettings:
    """Outbound webhook delivery settings."""

    timeout_seconds: float = 10.0
    max_attempts: int = 5
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 300.0
    staleness_seconds: int = 600
    allow_insecure: bool = False
    user_agent: str = "CV-Orchestrator-Webhook/1.0"


@dataclass(slots=True, frozen=True)
class MetricsSettings:
    """In-process metrics settings."""

    latency_window: int = 1_000


@dataclass(slots=True, frozen=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".cv_orchestrator.db")
    sqlite_busy_timeout_ms: int = 5_000
    scheduler: SchedulerSettings = field(default_factory=SchedulerSettings)
    retry: RetrySettings = field(default_factory=RetrySettings)
    providers: ProviderSettings = field(default_factory=ProviderSettings)
    webhooks: WebhookSettings = field(default_factory=WebhookSettings)
    metrics: MetricsSettings = field(default_factory=MetricsSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        tier_limits = dict(DEFAULT_TIER_LIMITS)
        tier_limits.update(_parse_int_mapping("CV_ORCH_TIER_LIMITS"))
        type_timeouts = dict(DEFAULT_TYPE_TIMEOUTS)
        type_timeouts.update(_parse_int_mapping("CV_ORCH_TYPE_TIMEOUTS"))
        return cls(
            db_path=db_path or Path(os.getenv("CV_ORCH_DB_PATH", ".cv_orchestrator.db")),
            sqlite_busy_timeout_ms=int(os.getenv("CV_ORCH_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            scheduler=SchedulerSettings(
                worker_pool_size=int(os.getenv("CV_ORCH_WORKER_POOL_SIZE", "4")),
                tick_interval_seconds=float(os.getenv("CV_ORCH_TICK_INTERVAL_SECONDS", "1.0")),
                admission_batch_size=int(os.getenv("CV_ORCH_ADMISSION_BATCH_SIZE", "100")),
                tier_limits=tier_limits,
                user_tiers=_parse_str_mapping("CV_ORCH_USER_TIERS"),
                default_tier=os.getenv("CV_ORCH_DEFAULT_TIER", "free").strip().lower(),
                type_timeouts=type_timeouts,
                queued_timeout_seconds=int(os.getenv("CV_ORCH_QUEUED_TIMEOUT_SECONDS", "3600")),
                unlimited_types=_parse_csv(
                    "CV_ORCH_UNLIMITED_TYPES",
                    default="webhook_delivery,email_notification",
                ),
                worker_id=os.getenv("CV_ORCH_WORKER_ID", "worker-local"),
            ),
            retry=RetrySettings(
                max_retries=int(os.getenv("CV_ORCH_RETRY_MAX_RETRIES", "3")),
                strategy=os.getenv("CV_ORCH_RETRY_STRATEGY", "exponential").strip().lower(),
                base_delay_seconds=float(os.getenv("CV_ORCH_RETRY_BASE_SECONDS", "30")),
                multiplier=float(os.getenv("CV_ORCH_RETRY_MULTIPLIER", "2")),
                max_delay_seconds=float(os.getenv("CV_ORCH_RETRY_MAX_DELAY_SECONDS", "900")),
                jitter_ratio=float(os.getenv("CV_ORCH_RETRY_JITTER_RATIO", "0.2")),
                type_max_retries=_parse_int_mapping("CV_ORCH_TYPE_MAX_RETRIES"),
            ),
            providers=_load_provider_settings(),
            webhooks=WebhookSettings(
                timeout_seconds=float(os.getenv("CV_ORCH_WEBHOOK_TIMEOUT_SECONDS", "10")),
                max_attempts=int(os.getenv("CV_ORCH_WEBHOOK_MAX_ATTEMPTS", "5")),
                base_delay_seconds=float(os.getenv("CV_ORCH_WEBHOOK_BASE_DELAY_SECONDS", "1")),
                max_delay_seconds=float(os.getenv("CV_ORCH_WEBHOOK_MAX_DELAY_SECONDS", "300")),
                staleness_seconds=int(os.getenv("CV_ORCH_WEBHOOK_STALENESS_SECONDS", "600")),
                allow_insecure=_env_bool("CV_ORCH_WEBHOOK_ALLOW_INSECURE", default=False),
            ),
            metrics=MetricsSettings(
                latency_window=int(os.getenv("CV_ORCH_METRICS_WINDOW", "1000")),
            ),
        )

    def validate(self) -> None:  # noqa: C901, PLR0912
        """Raise configuration error for values the engine cannot run with."""

        scheduler = self.scheduler
        if scheduler.worker_pool_size <= 0:
            raise ValueError("CV_ORCH_WORKER_POOL_SIZE must be > 0.")
        if scheduler.tick_interval_seconds < 0:
            raise ValueError("CV_ORCH_TICK_INTERVAL_SECONDS must be >= 0.")
        for tier, limit in scheduler.tier_limits.items():
            if limit <= 0:
                raise ValueError(f"Tier concurrency limit must be positive: {tier!r} -> {limit}")
        if scheduler.default_tier not in scheduler.tier_limits:
            raise ValueError(
                f"CV_ORCH_DEFAULT_TIER={scheduler.default_tier!r} is not a configured tier.",
            )
        for user_id, tier in scheduler.user_tiers.items():
            if tier not in scheduler.tier_limits:
                raise ValueError(f"Unknown tier {tier!r} for user {user_id!r}.")
        for job_type, seconds in scheduler.type_timeouts.items():
            _validate_job_type(job_type, variable="CV_ORCH_TYPE_TIMEOUTS")
            if seconds <= 0:
                raise ValueError(f"Timeout budget must be positive: {job_type!r} -> {seconds}")
        for job_type in scheduler.unlimited_types:
            _validate_job_type(job_type, variable="CV_ORCH_UNLIMITED_TYPES")

        retry = self.retry
        if retry.strategy not in RETRY_STRATEGIES:
            raise ValueError(
                f"CV_ORCH_RETRY_STRATEGY must be one of {', '.join(RETRY_STRATEGIES)}.",
            )
        for job_type, value in {"default": retry.max_retries, **retry.type_max_retries}.items():
            if job_type != "default":
                _validate_job_type(job_type, variable="CV_ORCH_TYPE_MAX_RETRIES")
            if not 0 <= value <= MAX_RETRIES_CEILING:
                raise ValueError(
                    f"max_retries for {job_type} must be within 0..{MAX_RETRIES_CEILING}.",
                )
        if retry.base_delay_seconds <= 0 or retry.max_delay_seconds < retry.base_delay_seconds:
            raise ValueError("Retry delays must satisfy 0 < base <= max.")
        if retry.multiplier < 1:
            raise ValueError("CV_ORCH_RETRY_MULTIPLIER must be >= 1.")
        if not 0 <= retry.jitter_ratio < 1:
            raise ValueError("CV_ORCH_RETRY_JITTER_RATIO must be within [0, 1).")

        names = {descriptor.name for descriptor in self.providers.descriptors}
        if self.providers.default_provider not in names:
            raise ValueError(
                f"Default provider {self.providers.default_provider!r} is not configured "
                "in CV_ORCH_AI_PROVIDERS.",
            )
        for job_type, provider in self.providers.type_providers.items():
            _validate_job_type(job_type, variable="CV_ORCH_AI_TYPE_PROVIDERS")
            if provider not in names:
                raise ValueError(f"Provider {provider!r} for {job_type!r} is not configured.")

        if self.webhooks.max_attempts <= 0:
            raise ValueError("CV_ORCH_WEBHOOK_MAX_ATTEMPTS must be > 0.")
        if self.webhooks.max_attempts - 1 > MAX_RETRIES_CEILING:
            raise ValueError(
                f"CV_ORCH_WEBHOOK_MAX_ATTEMPTS must be <= {MAX_RETRIES_CEILING + 1}.",
            )
        if self.webhooks.staleness_seconds <= 0:
            raise ValueError("CV_ORCH_WEBHOOK_STALENESS_SECONDS must be > 0.")
        if self.metrics.latency_window <= 0:
            raise ValueError("CV_ORCH_METRICS_WINDOW must be > 0.")


def default_descriptor(name: str, *, position: int) -> ProviderDescriptor:
    """Descriptor for a supported provider before environment overrides."""

    model, base_url, timeout = _PROVIDER_DEFAULTS[name]
    return ProviderDescriptor(
        name=name,
        model=model,
        timeout_seconds=timeout,
        fallback_position=position,
        base_url=base_url,
    )


def _load_provider_settings() -> ProviderSettings:
    names = _parse_csv("CV_ORCH_AI_PROVIDERS", default="ollama")
    descriptors: list[ProviderDescriptor] = []
    for position, name in enumerate(names):
        if name not in SUPPORTED_PROVIDERS:
            raise ValueError(
                f"Unsupported provider in CV_ORCH_AI_PROVIDERS: {name!r}. "
                f"Expected one of {', '.join(SUPPORTED_PROVIDERS)}.",
            )
        model, base_url, timeout = _PROVIDER_DEFAULTS[name]
        prefix = f"CV_ORCH_AI_{name.upper()}"
        api_key_env = _PROVIDER_API_KEY_ENV.get(name)
        descriptors.append(
            ProviderDescriptor(
                name=name,
                model=os.getenv(f"{prefix}_MODEL", model),
                timeout_seconds=float(os.getenv(f"{prefix}_TIMEOUT_SECONDS", str(timeout))),
                fallback_position=position,
                base_url=os.getenv(f"{prefix}_BASE_URL", base_url).rstrip("/"),
                api_key=os.getenv(api_key_env) if api_key_env else None,
            ),
        )
    return ProviderSettings(
        descriptors=tuple(descriptors),
        default_provider=os.getenv("CV_ORCH_AI_DEFAULT_PROVIDER", names[0] if names else "")
        .strip()
        .lower(),
        type_providers=_parse_str_mapping("CV_ORCH_AI_TYPE_PROVIDERS"),
        fallback_enabled=_env_bool("CV_ORCH_AI_FALLBACK_ENABLED", default=False),
        call_pool_size=int(os.getenv("CV_ORCH_AI_CALL_POOL_SIZE", "8")),
        circuit_failure_threshold=int(os.getenv("CV_ORCH_AI_CIRCUIT_FAILURE_THRESHOLD", "5")),
        circuit_reset_seconds=float(os.getenv("CV_ORCH_AI_CIRCUIT_RESET_SECONDS", "60")),
    )


def _parse_csv(name: str, *, default: str = "") -> tuple[str, ...]:
    raw = os.getenv(name, default)
    values: list[str] = []
    for part in raw.split(","):
        token = part.strip().lower()
        if token and token not in values:
            values.append(token)
    return tuple(values)


def _parse_str_mapping(name: str) -> dict[str, str]:
    raw = os.getenv(name, "").strip()
    if not raw:
        return {}

    mapping: dict[str, str] = {}
    for part in raw.split(","):
        token = part.strip()
        if not token:
            continue
        if "=" not in token:
            raise ValueError(
                f"Invalid {name} entry: {token!r}. Expected format '<key>=<value>'.",
            )
        key, value = token.split("=", 1)
        if not key.strip() or not value.strip():
            raise ValueError(f"Invalid {name} entry: {token!r}. Empty key or value.")
        mapping[key.strip()] = value.strip().lower()
    return mapping


def _parse_int_mapping(name: str) -> dict[str, int]:
    parsed: dict[str, int] = {}
    for key, value in _parse_str_mapping(name).items():
        try:
            parsed[key] = int(value)
        except ValueError as error:
            raise ValueError(f"Invalid {name} value for {key!r}: {value!r}") from error
    return parsed


def _validate_job_type(value: str, *, variable: str) -> None:
    try:
        JobType(value)
    except ValueError as error:
        raise ValueError(f"Unknown job type {value!r} in {variable}.") from error


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
