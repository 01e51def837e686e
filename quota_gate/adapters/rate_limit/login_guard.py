"""In-memory guard for authentication routes.

Counts attempts per client IP in a short fixed window; a client that exceeds
the allowance is blocked outright for a much longer period, regardless of
window boundaries.

Notes:
- Per-process only: running multiple workers multiplies the effective limit.
- Thread-safe: uses a lock around shared state.
"""

from __future__ import annotations

import math
import threading
import time
from dataclasses import dataclass
from typing import Callable

from quota_gate.adapters.rate_limit.base import AbstractRateLimiter, RateLimitResult

_SWEEP_THRESHOLD = 10_000


@dataclass
class _GuardState:
    window_start: int
    count: int
    blocked_until: float = 0.0


class LoginAttemptGuard(AbstractRateLimiter):
    """Fixed-window limiter with a block period after the limit is exceeded."""

    def __init__(
        self,
        *,
        points: int = 10,
        duration_seconds: int = 1,
        block_seconds: int = 900,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the guard.

        Args:
            points: Attempts allowed per window.
            duration_seconds: Size of the fixed window in seconds.
            block_seconds: How long a key stays blocked once it exceeds points.
            clock: Time source function returning UNIX time in seconds.

        Raises:
            ValueError: If any limit parameter is invalid.
        """
        if points < 1:
            raise ValueError("points must be >= 1")
        if duration_seconds < 1:
            raise ValueError("duration_seconds must be >= 1")
        if block_seconds < 1:
            raise ValueError("block_seconds must be >= 1")

        self._points = points
        self._duration = duration_seconds
        self._block_seconds = block_seconds
        self._clock = clock
        self._lock = threading.RLock()
        self._state_by_key: dict[str, _GuardState] = {}

    def _get_window_bounds(self, now: float) -> tuple[int, int]:
        window_start = int(now // self._duration) * self._duration
        return window_start, window_start + self._duration

    def _sweep_locked(self, now: float) -> None:
        window_start, _ = self._get_window_bounds(now)
        stale = [
            k
            for k, s in self._state_by_key.items()
            if s.blocked_until <= now and s.window_start < window_start
        ]
        for key in stale:
            del self._state_by_key[key]

    def _blocked(self, *, now: float, until: float) -> RateLimitResult:
        return RateLimitResult(
            allowed=False,
            limit=self._points,
            remaining=0,
            reset_at=int(math.ceil(until)),
            retry_after_seconds=max(1, int(math.ceil(until - now))),
        )

    def consume(self, key: str, *, cost: int = 1) -> RateLimitResult:
        """Consume attempts for the provided key.

        Args:
            key: Client identifier (usually the caller IP).
            cost: Units to consume (default 1).

        Returns:
            RateLimitResult; blocked results carry the remaining block time.

        Raises:
            ValueError: If key is empty or cost is invalid.
        """
        if cost < 1:
            raise ValueError("cost must be >= 1")
        if not key:
            raise ValueError("key must be a non-empty string")

        now = self._clock()
        window_start, reset_at = self._get_window_bounds(now)

        with self._lock:
            if len(self._state_by_key) >= _SWEEP_THRESHOLD:
                self._sweep_locked(now)

            state = self._state_by_key.get(key)
            if state is not None and state.blocked_until > now:
                return self._blocked(now=now, until=state.blocked_until)

            if state is None or state.window_start != window_start:
                state = _GuardState(window_start=window_start, count=0)
                self._state_by_key[key] = state

            if state.count + cost <= self._points:
                state.count += cost
                return RateLimitResult(
                    allowed=True,
                    limit=self._points,
                    remaining=self._points - state.count,
                    reset_at=reset_at,
                    retry_after_seconds=None,
                )

            state.blocked_until = now + self._block_seconds
            return self._blocked(now=now, until=state.blocked_until)
