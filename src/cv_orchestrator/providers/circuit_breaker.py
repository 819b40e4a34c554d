"""Per-provider circuit breaker used by the router."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from enum import Enum

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Stops calling a provider after repeated failures.

    After ``reset_seconds`` in the open state one probe is let through
    (half-open); ``half_open_successes`` consecutive successes close the
    circuit again, any failure reopens it.
    """

    def __init__(
        self,
        name: str,
        *,
        failure_threshold: int = 5,
        reset_seconds: float = 60.0,
        half_open_successes: int = 2,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if failure_threshold <= 0:
            raise ValueError("failure_threshold must be > 0")
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_seconds = reset_seconds
        self.half_open_successes = half_open_successes
        self._clock = clock
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._successes = 0
        self._opened_at: float | None = None

    @property
    def state(self) -> CircuitState:
        with self._lock:
            self._maybe_half_open()
            return self._state

    def allow_request(self) -> bool:
        with self._lock:
            self._maybe_half_open()
            return self._state != CircuitState.OPEN

    def record_success(self) -> None:
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._successes += 1
                if self._successes >= self.half_open_successes:
                    logger.info("Circuit %s closed", self.name)
                    self._state = CircuitState.CLOSED
                    self._failures = 0
                    self._opened_at = None
            else:
                self._failures = 0

    def record_failure(self) -> None:
        with self._lock:
            self._failures += 1
            if self._state == CircuitState.HALF_OPEN:
                logger.warning("Circuit %s reopened after failed probe", self.name)
                self._open()
            elif self._state == CircuitState.CLOSED and self._failures >= self.failure_threshold:
                logger.warning(
                    "Circuit %s opened after %d consecutive failures",
                    self.name,
                    self._failures,
                )
                self._open()

    def _open(self) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = self._clock()
        self._successes = 0

    def _maybe_half_open(self) -> None:
        if self._state != CircuitState.OPEN or self._opened_at is None:
            return
        if self._clock() - self._opened_at >= self.reset_seconds:
            logger.info("Circuit %s half-open", self.name)
            self._state = CircuitState.HALF_OPEN
            self._successes = 0
