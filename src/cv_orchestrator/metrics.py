"""In-process operational metrics: outcomes, latency percentiles, validation failures."""

from __future__ import annotations

import math
import threading
from collections import Counter, deque
from collections.abc import Sequence
from dataclasses import dataclass, field

DEFAULT_LATENCY_WINDOW = 1_000
REPORTED_PERCENTILES = (50, 95, 99)


def percentile(sorted_samples: Sequence[float], p: float) -> float:
    """Nearest-rank percentile: index ``ceil(p/100 * n) - 1`` floored at 0."""

    if not sorted_samples:
        return 0.0
    index = max(0, math.ceil(p / 100 * len(sorted_samples)) - 1)
    return float(sorted_samples[min(index, len(sorted_samples) - 1)])


@dataclass(slots=True)
class LatencyPercentiles:
    """Latency percentiles for one job type, in milliseconds."""

    sample_size: int
    p50_ms: float
    p95_ms: float
    p99_ms: float
    min_ms: float
    avg_ms: float
    max_ms: float


@dataclass(slots=True)
class JobTypeMetrics:
    """Outcome counters for one job type."""

    job_type: str
    succeeded: int
    failed: int
    retried: int
    latency: LatencyPercentiles

    @property
    def total(self) -> int:
        return self.succeeded + self.failed

    @property
    def success_rate(self) -> float | None:
        if self.total == 0:
            return None
        return self.succeeded / self.total


@dataclass(slots=True)
class ValidationFailure:
    field_path: str
    message: str
    count: int


@dataclass(slots=True)
class ValidationSnapshot:
    """Frequency of schema-validation failures by ``(field path, message)``."""

    total: int
    unique: int
    by_field: list[ValidationFailure] = field(default_factory=list)


@dataclass(slots=True)
class MetricsSnapshot:
    job_types: dict[str, JobTypeMetrics]
    validation: ValidationSnapshot
    errors_by_kind: dict[str, int]


class _TypeWindow:
    __slots__ = ("failed", "latencies", "retried", "succeeded")

    def __init__(self, window: int) -> None:
        self.succeeded = 0
        self.failed = 0
        self.retried = 0
        self.latencies: deque[float] = deque(maxlen=window)


class MetricsCollector:
    """Thread-safe collector shared by workers, the router and the dispatcher."""

    def __init__(self, *, latency_window: int = DEFAULT_LATENCY_WINDOW) -> None:
        if latency_window <= 0:
            raise ValueError("latency_window must be > 0")
        self.latency_window = latency_window
        self._lock = threading.Lock()
        self._types: dict[str, _TypeWindow] = {}
        self._validation = Counter[tuple[str, str]]()
        self._errors = Counter[str]()

    def record_success(self, job_type: str, *, latency_ms: float) -> None:
        with self._lock:
            window = self._window(job_type)
            window.succeeded += 1
            window.latencies.append(float(latency_ms))

    def record_failure(self, job_type: str, *, error_kind: str | None = None) -> None:
        with self._lock:
            self._window(job_type).failed += 1
            if error_kind is not None:
                self._errors[error_kind] += 1

    def record_retry(self, job_type: str) -> None:
        with self._lock:
            self._window(job_type).retried += 1

    def record_error(self, error_kind: str) -> None:
        """Count an error that did not end an attempt (e.g. a discarded late result)."""

        with self._lock:
            self._errors[error_kind] += 1

    def record_validation_failure(self, field_path: str, message: str) -> None:
        with self._lock:
            self._validation[(field_path or "root", message)] += 1

    def reset_validation_failures(self) -> None:
        """Operator action; nothing else clears the validation map."""

        with self._lock:
            self._validation.clear()

    def latency_percentiles(self, job_type: str) -> LatencyPercentiles:
        with self._lock:
            samples = sorted(self._window(job_type).latencies)
        return _summarize(samples)

    def validation_snapshot(self) -> ValidationSnapshot:
        with self._lock:
            items = self._validation.most_common()
        return ValidationSnapshot(
            total=sum(count for _, count in items),
            unique=len(items),
            by_field=[
                ValidationFailure(field_path=path, message=message, count=count)
                for (path, message), count in items
            ],
        )

    def snapshot(self) -> MetricsSnapshot:
        with self._lock:
            raw = {
                job_type: (
                    window.succeeded,
                    window.failed,
                    window.retried,
                    sorted(window.latencies),
                )
                for job_type, window in self._types.items()
            }
            errors = dict(self._errors)
        return MetricsSnapshot(
            job_types={
                job_type: JobTypeMetrics(
                    job_type=job_type,
                    succeeded=succeeded,
                    failed=failed,
                    retried=retried,
                    latency=_summarize(samples),
                )
                for job_type, (succeeded, failed, retried, samples) in sorted(raw.items())
            },
            validation=self.validation_snapshot(),
            errors_by_kind=errors,
        )

    def _window(self, job_type: str) -> _TypeWindow:
        window = self._types.get(job_type)
        if window is None:
            window = _TypeWindow(self.latency_window)
            self._types[job_type] = window
        return window


def render_metrics_lines(snapshot: MetricsSnapshot) -> list[str]:
    """Human-readable metrics block for CLI output."""

    lines = ["Job metrics:"]
    if not snapshot.job_types:
        lines.append("  (no completed attempts)")
    for metrics in snapshot.job_types.values():
        rate = "n/a" if metrics.success_rate is None else f"{metrics.success_rate:.1%}"
        latency = metrics.latency
        lines.append(
            f"  {metrics.job_type}: ok={metrics.succeeded} failed={metrics.failed} "
            f"retried={metrics.retried} success_rate={rate} "
            f"p50={latency.p50_ms:.0f}ms p95={latency.p95_ms:.0f}ms p99={latency.p99_ms:.0f}ms "
            f"(n={latency.sample_size})",
        )
    if snapshot.errors_by_kind:
        errors = sorted(snapshot.errors_by_kind.items())
        lines.append("Errors by kind: " + ", ".join(f"{kind}={count}" for kind, count in errors))
    validation = snapshot.validation
    lines.append(f"Validation failures: total={validation.total} unique={validation.unique}")
    lines.extend(
        f"  {item.field_path}: {item.message} x{item.count}" for item in validation.by_field[:10]
    )
    return lines


def _summarize(samples: list[float]) -> LatencyPercentiles:
    if not samples:
        return LatencyPercentiles(0, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0)
    p50, p95, p99 = (percentile(samples, p) for p in REPORTED_PERCENTILES)
    return LatencyPercentiles(
        sample_size=len(samples),
        p50_ms=p50,
        p95_ms=p95,
        p99_ms=p99,
        min_ms=samples[0],
        avg_ms=sum(samples) / len(samples),
        max_ms=samples[-1],
    )
