"""Admission decision engine.

Pure functions: given a tier policy and the counts produced by one increment,
decide whether the request may proceed and compute the telemetry exposed to
the caller. No I/O happens here; the current time is passed in.
"""

from __future__ import annotations

import math
from dataclasses import dataclass

from quota_gate.adapters.rate_limit.base import WindowCounts
from quota_gate.schemas.rate_limit import TierPolicy


@dataclass(frozen=True)
class Decision:
    """Outcome of one admission check.

    Attributes:
        allowed: Both windows are within their limits.
        warning: Allowed, but at least one window is above its warn threshold.
        hourly_count: Requests counted in the sustained window, this one included.
        burst_count: Requests counted in the burst window, this one included.
        limit: Sustained window limit.
        burst_limit: Burst window limit.
        reset_at_hourly: UNIX epoch seconds when the sustained window resets.
        reset_at_burst: UNIX epoch seconds when the burst window resets.
        retry_after: Seconds to wait before retrying; None when allowed.
    """

    allowed: bool
    warning: bool
    hourly_count: int
    burst_count: int
    limit: int
    burst_limit: int
    reset_at_hourly: int
    reset_at_burst: int
    retry_after: int | None = None

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.hourly_count)

    @property
    def burst_remaining(self) -> int:
        return max(0, self.burst_limit - self.burst_count)

    def headers(self) -> dict[str, str]:
        """Telemetry headers describing both windows."""
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset_at_hourly),
            "X-RateLimit-Burst-Limit": str(self.burst_limit),
            "X-RateLimit-Burst-Remaining": str(self.burst_remaining),
            "X-RateLimit-Burst-Reset": str(self.reset_at_burst),
        }


def _remaining_seconds(ttl: float | None, window: int) -> float:
    # TTL comes from the same reply as the counts; fall back to the full window.
    if ttl is not None and 0 < ttl <= window:
        return ttl
    return float(window)


def decide(policy: TierPolicy, counts: WindowCounts, now: float) -> Decision:
    """Decide admission for one request.

    A count equal to a limit is still allowed; the (limit + 1)-th request in
    a window is the first rejected one. Warnings are only raised on allowed
    requests.

    Args:
        policy: Quota policy of the caller's tier.
        counts: Counts after this request's increment.
        now: Current UNIX time in seconds.

    Returns:
        Decision with allow/reject, warning flag and reset telemetry.
    """
    hourly_over = counts.hourly_count > policy.limit
    burst_over = counts.burst_count > policy.burst_limit
    allowed = not hourly_over and not burst_over

    warning = allowed and (
        counts.hourly_count > policy.limit * policy.warn_threshold
        or counts.burst_count > policy.burst_limit * policy.warn_threshold
    )

    hourly_left = _remaining_seconds(counts.hourly_ttl, policy.window)
    burst_left = _remaining_seconds(counts.burst_ttl, policy.burst_window)

    retry_after: int | None = None
    if not allowed:
        # Wait for every exceeded window; retrying earlier is rejected again.
        blocking = [left for left, over in ((hourly_left, hourly_over), (burst_left, burst_over)) if over]
        retry_after = max(1, math.ceil(max(blocking)))

    return Decision(
        allowed=allowed,
        warning=warning,
        hourly_count=counts.hourly_count,
        burst_count=counts.burst_count,
        limit=policy.limit,
        burst_limit=policy.burst_limit,
        reset_at_hourly=math.ceil(now + hourly_left),
        reset_at_burst=math.ceil(now + burst_left),
        retry_after=retry_after,
    )
