"""Admission limiter: counts a request and decides whether it may proceed.

Counting goes to the shared store first. When the store reports
StoreUnavailable the request is counted by the per-instance fallback counter
instead, and the instance enters degraded mode:

- entering degraded mode is logged and counted once per episode, not once
  per request;
- for ``cooldown_seconds`` the store is not contacted at all;
- after the cooldown a single request probes the store; success ends the
  episode, failure re-arms the cooldown within the same episode.

While degraded, every instance enforces its own quota, so the cluster-wide
limit is a multiple of the configured one. This is accepted in exchange for
staying available.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable

from quota_gate.adapters.rate_limit.base import AbstractWindowCounter, StoreUnavailable, WindowCounts
from quota_gate.adapters.rate_limit.in_memory import InMemoryWindowCounter
from quota_gate.core.errors import AdmissionInternalError
from quota_gate.core.metrics import (
    record_degraded_mode_entered,
    record_degraded_mode_exited,
    record_fallback_request,
)
from quota_gate.schemas.rate_limit import TierPolicy
from quota_gate.services.decision import Decision, decide
from quota_gate.services.identity import RateSubject
from quota_gate.services.policy import PolicyTable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AdmissionResult:
    """Everything the HTTP layer needs to act on one admission check."""

    subject: RateSubject
    policy: TierPolicy
    decision: Decision
    degraded: bool


class DegradedModeTracker:
    """Tracks store-failure episodes and the cooldown between store probes."""

    def __init__(
        self,
        *,
        cooldown_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if cooldown_seconds < 0:
            raise ValueError("cooldown_seconds must be >= 0")

        self._cooldown = cooldown_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._degraded = False
        self._probe_at = 0.0
        self._episodes = 0

    @property
    def degraded(self) -> bool:
        return self._degraded

    @property
    def episodes(self) -> int:
        """Number of degraded-mode episodes entered so far."""
        return self._episodes

    def should_use_store(self) -> bool:
        """Return True when this request should go to the shared store.

        Healthy: always. Degraded: only once the cooldown has elapsed, and
        then only for the single request that claims the probe.
        """
        with self._lock:
            if not self._degraded:
                return True
            now = self._clock()
            if now < self._probe_at:
                return False
            self._probe_at = now + self._cooldown
            return True

    def record_failure(self) -> bool:
        """Register a store failure. Returns True if it starts a new episode."""
        with self._lock:
            self._probe_at = self._clock() + self._cooldown
            if self._degraded:
                return False
            self._degraded = True
            self._episodes += 1
            return True

    def record_success(self) -> bool:
        """Register a store success. Returns True if it ends an episode."""
        with self._lock:
            if not self._degraded:
                return False
            self._degraded = False
            return True


class AdmissionLimiter:
    """Counts requests against tiered two-window quotas.

    Instances are fully isolated: all counter state is owned by the counters
    passed in, never by module globals.
    """

    def __init__(
        self,
        *,
        policies: PolicyTable,
        store: AbstractWindowCounter | None,
        fallback: InMemoryWindowCounter | None = None,
        cooldown_seconds: float = 30.0,
        clock: Callable[[], float] = time.time,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the limiter.

        Args:
            policies: Tier policy table.
            store: Shared counter store; None counts locally only.
            fallback: Per-instance counter used when the store is unavailable.
            cooldown_seconds: Time to skip the store after a failure.
            clock: Wall clock (UNIX seconds) used for reset timestamps.
            monotonic: Monotonic clock used for the degraded-mode cooldown.
        """
        self._policies = policies
        self._store = store
        self._fallback = fallback or InMemoryWindowCounter(clock=clock)
        self._clock = clock
        self._tracker = DegradedModeTracker(cooldown_seconds=cooldown_seconds, clock=monotonic)

    @property
    def policies(self) -> PolicyTable:
        return self._policies

    @property
    def degraded(self) -> bool:
        return self._tracker.degraded

    @property
    def tracker(self) -> DegradedModeTracker:
        return self._tracker

    async def admit(self, subject: RateSubject) -> AdmissionResult:
        """Count one request for ``subject`` and decide admission.

        Raises:
            AdmissionInternalError: If neither the store nor the fallback
                counter could count the request. Callers must reject.
        """
        policy = self._policies.lookup(subject.tier)
        counts, degraded = await self._count(subject, policy)
        decision = decide(policy, counts, self._clock())
        return AdmissionResult(subject=subject, policy=policy, decision=decision, degraded=degraded)

    async def _count(self, subject: RateSubject, policy: TierPolicy) -> tuple[WindowCounts, bool]:
        if self._store is None:
            return await self._count_locally(subject, policy), False

        if self._tracker.should_use_store():
            outcome = await self._store.increment_windows(
                subject.id,
                hourly_ttl=policy.window,
                burst_ttl=policy.burst_window,
            )
            if isinstance(outcome, WindowCounts):
                if self._tracker.record_success():
                    record_degraded_mode_exited()
                    logger.info("rate_limit.degraded_mode_exited")
                return outcome, False

            self._on_store_unavailable(outcome)

        record_fallback_request()
        return await self._count_locally(subject, policy), True

    def _on_store_unavailable(self, failure: StoreUnavailable) -> None:
        if not self._tracker.record_failure():
            return
        record_degraded_mode_entered()
        logger.warning(
            "rate_limit.degraded_mode_entered",
            extra={
                "reason": failure.reason,
                "detail": failure.detail,
                "scope": "per_instance_limits",
                "episode": self._tracker.episodes,
            },
        )

    async def _count_locally(self, subject: RateSubject, policy: TierPolicy) -> WindowCounts:
        try:
            outcome = await self._fallback.increment_windows(
                subject.id,
                hourly_ttl=policy.window,
                burst_ttl=policy.burst_window,
            )
        except Exception as exc:
            raise AdmissionInternalError(
                code="rate_limiter_unavailable",
                message="Rate limiting is temporarily unavailable",
                details={"reason": type(exc).__name__},
            ) from exc

        if not isinstance(outcome, WindowCounts):
            logger.error(
                "rate_limit.fallback_failed",
                extra={"subject_id": subject.id},
            )
            raise AdmissionInternalError(
                code="rate_limiter_unavailable",
                message="Rate limiting is temporarily unavailable",
                details={"reason": "fallback_unavailable"},
            )
        return outcome
