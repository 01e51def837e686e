"""In-memory two-window counter used when the shared store is unavailable.

Notes:
- Per-process only: while every instance runs on its fallback counter, each
  one enforces its own quota, so the cluster-wide limit becomes
  ``limit x instance_count``.
- Thread-safe: uses a lock around shared state; both windows of a subject are
  updated under a single lock acquisition.
- Same window semantics as the Redis counter: the first increment of a cycle
  arms the expiry, later increments never move it.
- Bounded: counters are kept in one insertion-ordered bucket per window
  length. Within a bucket, creation order is expiry order, so the counter
  closest to expiry is always at the front of some bucket and eviction never
  scans the whole map.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable

from quota_gate.adapters.rate_limit.base import (
    AbstractWindowCounter,
    WindowCounts,
    counter_keys,
)

logger = logging.getLogger(__name__)


@dataclass
class _CounterState:
    count: int
    expires_at: float
    ttl: int


class InMemoryWindowCounter(AbstractWindowCounter):
    """Process-local counter with arm-once expiry per window cycle.

    Important:
        This counter is per-process only. Its keyspace is disjoint from the
        Redis counters and is never reconciled with them.
    """

    def __init__(
        self,
        *,
        max_entries: int = 100_000,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the in-memory counter.

        Args:
            max_entries: Maximum number of counters held at once. When full,
                the counters closest to expiry are dropped first (expired
                ones always come before live ones).
            clock: Time source function returning UNIX time in seconds.

        Raises:
            ValueError: If max_entries is invalid.
        """
        if max_entries < 2:
            raise ValueError("max_entries must be >= 2")

        self._max_entries = max_entries
        self._clock = clock
        self._lock = threading.RLock()
        self._state_by_key: dict[str, _CounterState] = {}
        # window length -> keys in the order their current cycle started
        self._buckets: dict[int, OrderedDict[str, None]] = {}
        self._evictions = 0

    def _start_cycle_locked(self, key: str, ttl: int, now: float) -> _CounterState:
        previous = self._state_by_key.get(key)
        if previous is not None:
            self._drop_from_bucket_locked(previous.ttl, key)

        state = _CounterState(count=0, expires_at=now + ttl, ttl=ttl)
        self._state_by_key[key] = state
        self._buckets.setdefault(ttl, OrderedDict())[key] = None
        return state

    def _bump_locked(self, key: str, ttl: int, now: float) -> tuple[int, float]:
        """Increment one counter, starting a new cycle if the old one expired.

        Returns:
            Tuple of (count_after_increment, seconds_until_expiry).
        """
        state = self._state_by_key.get(key)
        if state is None or state.expires_at <= now:
            state = self._start_cycle_locked(key, ttl, now)
        state.count += 1
        return state.count, state.expires_at - now

    def _drop_from_bucket_locked(self, ttl: int, key: str) -> None:
        bucket = self._buckets[ttl]
        del bucket[key]
        if not bucket:
            del self._buckets[ttl]

    def _pop_soonest_locked(self) -> _CounterState:
        """Remove and return the counter closest to expiry.

        Only the front of each bucket is inspected, so the cost depends on the
        number of distinct window lengths, not on the number of counters.
        """
        ttl = min(
            self._buckets,
            key=lambda t: self._state_by_key[next(iter(self._buckets[t]))].expires_at,
        )
        key = next(iter(self._buckets[ttl]))
        self._drop_from_bucket_locked(ttl, key)
        return self._state_by_key.pop(key)

    def _make_room_locked(self, now: float, keys: tuple[str, ...]) -> None:
        live_evicted = 0
        while True:
            incoming = sum(1 for k in keys if k not in self._state_by_key)
            if len(self._state_by_key) + incoming <= self._max_entries:
                break
            evicted = self._pop_soonest_locked()
            self._evictions += 1
            if evicted.expires_at > now:
                live_evicted += 1

        if live_evicted:
            logger.warning(
                "rate_limit.fallback_capacity_evicted",
                extra={"evicted": live_evicted, "max_entries": self._max_entries},
            )

    def increment(self, subject_id: str, *, hourly_ttl: int, burst_ttl: int) -> WindowCounts:
        """Synchronously increment both windows for a subject.

        Args:
            subject_id: Rate limit subject.
            hourly_ttl: Sustained window length in seconds.
            burst_ttl: Burst window length in seconds.

        Returns:
            WindowCounts with both counts and remaining window seconds.

        Raises:
            ValueError: If subject_id is empty or a TTL is invalid.
        """
        if not subject_id:
            raise ValueError("subject_id must be a non-empty string")
        if hourly_ttl < 1 or burst_ttl < 1:
            raise ValueError("window TTLs must be >= 1 second")

        hourly_key, burst_key = counter_keys(subject_id)
        hourly_name, burst_name = hourly_key.render(), burst_key.render()
        now = self._clock()

        with self._lock:
            self._make_room_locked(now, (hourly_name, burst_name))
            hourly_count, hourly_remaining = self._bump_locked(hourly_name, hourly_ttl, now)
            burst_count, burst_remaining = self._bump_locked(burst_name, burst_ttl, now)

        return WindowCounts(
            hourly_count=hourly_count,
            burst_count=burst_count,
            hourly_ttl=hourly_remaining,
            burst_ttl=burst_remaining,
        )

    async def increment_windows(
        self,
        subject_id: str,
        *,
        hourly_ttl: int,
        burst_ttl: int,
    ) -> WindowCounts:
        return self.increment(subject_id, hourly_ttl=hourly_ttl, burst_ttl=burst_ttl)

    def stats(self) -> dict[str, int]:
        """Return lightweight counter metrics without exposing subjects."""

        with self._lock:
            return {
                "entries": len(self._state_by_key),
                "max_entries": self._max_entries,
                "evictions": self._evictions,
            }
