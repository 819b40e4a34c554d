"""Per-user concurrency ceilings by subscription tier."""

from __future__ import annotations

import logging
import threading
from collections import Counter
from collections.abc import Callable, Iterable, Mapping

from cv_orchestrator.jobs.models import ADMITTED_STATUSES, JobType, LifecycleEvent

TierResolver = Callable[[str], str]


class UserConcurrencyLimiter:
    """Counts admitted (queued or processing) jobs per user.

    The scheduler acquires a slot before admitting a job; the slot is released
    when the state machine reports the job leaving the admitted states, no
    matter which path moved it (completion, failure, watchdog, cancel).
    """

    def __init__(
        self,
        *,
        tier_limits: Mapping[str, int],
        default_tier: str,
        tier_resolver: TierResolver | None = None,
        user_tiers: Mapping[str, str] | None = None,
        unlimited_types: Iterable[str] = (),
        logger: logging.Logger | None = None,
    ) -> None:
        if default_tier not in tier_limits:
            raise ValueError(f"Unknown default tier: {default_tier!r}")
        self.tier_limits = dict(tier_limits)
        self.default_tier = default_tier
        static_tiers = dict(user_tiers or {})
        self._resolve_tier = tier_resolver or (
            lambda user_id: static_tiers.get(user_id, default_tier)
        )
        self.unlimited_types = frozenset(unlimited_types)
        self._logger = logger or logging.getLogger(__name__)
        self._lock = threading.Lock()
        self._active = Counter[str]()

    def limit_for(self, user_id: str) -> int:
        tier = self._resolve_tier(user_id)
        return self.tier_limits.get(tier, self.tier_limits[self.default_tier])

    def is_exempt(self, job_type: JobType) -> bool:
        return job_type.value in self.unlimited_types

    def try_acquire(self, user_id: str, job_type: JobType) -> bool:
        """Reserve one slot; False when the user is at the tier ceiling."""

        if self.is_exempt(job_type):
            return True
        limit = self.limit_for(user_id)
        with self._lock:
            if self._active[user_id] >= limit:
                return False
            self._active[user_id] += 1
            return True

    def release(self, user_id: str, job_type: JobType) -> None:
        if self.is_exempt(job_type):
            return
        with self._lock:
            current = self._active[user_id]
            if current <= 0:
                self._active.pop(user_id, None)
                self._logger.warning("Concurrency release without slot for user %s", user_id)
                return
            if current == 1:
                del self._active[user_id]
            else:
                self._active[user_id] = current - 1

    def active(self, user_id: str) -> int:
        with self._lock:
            return self._active.get(user_id, 0)

    def saturated_users(self) -> list[str]:
        """Users currently holding every slot their tier allows."""

        with self._lock:
            counts = dict(self._active)
        return [user for user, count in counts.items() if count >= self.limit_for(user)]

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            return dict(self._active)

    def reset(self, counts: Mapping[str, int]) -> None:
        """Rebuild counters from the job store, e.g. after a restart."""

        with self._lock:
            self._active = Counter({user: count for user, count in counts.items() if count > 0})

    def observe(self, event: LifecycleEvent) -> None:
        """Lifecycle listener that frees the slot of jobs leaving admission."""

        if event.status_from not in ADMITTED_STATUSES:
            return
        if event.job.status in ADMITTED_STATUSES:
            return
        self.release(event.job.user_id, event.job.job_type)
