"""Rate limiter interfaces.

The admission layer depends on these abstractions (not the concrete
implementations) so the shared Redis counter and the process-local fallback
counter are interchangeable behind the same two-window increment contract.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Union


class WindowKind(str, Enum):
    """Which of the two concurrently enforced windows a counter belongs to."""

    HOURLY = "hourly"
    BURST = "burst"


@dataclass(frozen=True)
class CounterKey:
    """Identifies one counter: a subject in one window."""

    subject_id: str
    window_kind: WindowKind

    def render(self, prefix: str = "") -> str:
        """Return the store key, e.g. ``ratelimit:{user:42}:hourly``.

        The subject is wrapped in a hash tag so both windows of a subject land
        in the same Redis Cluster slot and can be updated by one script.
        """
        return f"{prefix}{{{self.subject_id}}}:{self.window_kind.value}"


def counter_keys(subject_id: str) -> tuple[CounterKey, CounterKey]:
    """Build the (hourly, burst) key pair for a subject."""
    return (
        CounterKey(subject_id, WindowKind.HOURLY),
        CounterKey(subject_id, WindowKind.BURST),
    )


@dataclass(frozen=True)
class WindowCounts:
    """Counter values after one increment of both windows.

    Attributes:
        hourly_count: Requests counted in the current sustained window.
        burst_count: Requests counted in the current burst window.
        hourly_ttl: Seconds until the sustained window expires, if known.
        burst_ttl: Seconds until the burst window expires, if known.
    """

    hourly_count: int
    burst_count: int
    hourly_ttl: float | None = None
    burst_ttl: float | None = None


@dataclass(frozen=True)
class StoreUnavailable:
    """The counter store could not complete the increment transaction.

    Returned (never raised) by counters so that callers must handle the
    failure branch explicitly.

    Attributes:
        reason: One of ``timeout``, ``connection``, ``malformed_reply``, ``error``.
        detail: Short description for logs.
    """

    reason: str
    detail: str = ""


IncrementOutcome = Union[WindowCounts, StoreUnavailable]


class AbstractWindowCounter(ABC):
    """Interface for two-window counters (shared store or local fallback)."""

    @abstractmethod
    async def increment_windows(
        self,
        subject_id: str,
        *,
        hourly_ttl: int,
        burst_ttl: int,
    ) -> IncrementOutcome:
        """Atomically increment the hourly and burst counters of a subject.

        Each counter's TTL is armed only by the increment that starts a new
        window cycle; later increments within the cycle never extend it.

        Args:
            subject_id: Rate limit subject (e.g. ``user:42`` or ``ip:10.0.0.1``).
            hourly_ttl: Sustained window length in seconds.
            burst_ttl: Burst window length in seconds.

        Returns:
            WindowCounts on success, StoreUnavailable when the backing store
            failed. Both counters are incremented or neither is.
        """
        raise NotImplementedError


@dataclass(frozen=True)
class RateLimitResult:
    """Result of a single-window rate limit check/consume operation.

    Attributes:
        allowed: Whether the request is allowed to proceed.
        limit: Max requests per window.
        remaining: Remaining requests in the current window (0 when blocked).
        reset_at: UNIX epoch seconds when the current window (or block) ends.
        retry_after_seconds: Suggested wait time in seconds when blocked.
    """

    allowed: bool
    limit: int
    remaining: int
    reset_at: int
    retry_after_seconds: int | None


class AbstractRateLimiter(ABC):
    """Interface for single-window limiters."""

    @abstractmethod
    def consume(self, key: str, *, cost: int = 1) -> RateLimitResult:
        """Consume rate limit budget for a given key.

        Args:
            key: Unique identifier (e.g., client IP address).
            cost: Units to consume (default 1).

        Returns:
            RateLimitResult describing whether it was allowed.
        """
        raise NotImplementedError
