"""Pydantic schemas for tiers, quota policies and rate limit telemetry."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, model_validator


class Tier(str, Enum):
    """Subscription tier determining quota generosity."""

    FREE = "free"
    PRO = "pro"
    ENTERPRISE = "enterprise"


class TierPolicy(BaseModel):
    """Quota parameters for one tier.

    Two windows are enforced at the same time: a sustained window (``window``,
    usually one hour) and a short burst window that stops a caller from
    spending its whole quota in a spike.
    """

    model_config = ConfigDict(frozen=True)

    limit: int = Field(
        ...,
        ge=1,
        description="Maximum requests per sustained window.",
    )
    window: int = Field(
        3600,
        ge=1,
        description="Sustained window length in seconds.",
    )
    burst_limit: int = Field(
        ...,
        ge=1,
        description="Maximum requests per burst window.",
    )
    burst_window: int = Field(
        60,
        ge=1,
        description="Burst window length in seconds.",
    )
    warn_threshold: float = Field(
        0.8,
        gt=0,
        le=1,
        description="Fraction of either limit above which allowed calls are flagged as warnings.",
    )

    @model_validator(mode="after")
    def _check_window_shape(self) -> "TierPolicy":
        if self.burst_window >= self.window:
            raise ValueError("burst_window must be shorter than window")
        if self.burst_limit > self.limit:
            raise ValueError("burst_limit must not exceed limit")
        return self


DEFAULT_TIER_POLICIES: dict[Tier, TierPolicy] = {
    Tier.FREE: TierPolicy(limit=100, window=3600, burst_limit=10, burst_window=60),
    Tier.PRO: TierPolicy(limit=1000, window=3600, burst_limit=50, burst_window=60),
    Tier.ENTERPRISE: TierPolicy(limit=10000, window=3600, burst_limit=200, burst_window=60),
}


class Principal(BaseModel):
    """Verified identity placed on ``request.state.principal`` by the auth layer."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1, description="Authenticated subject identifier.")
    tier: str = Field("free", description="Subscription tier name as issued by the identity provider.")


class RateLimitWindowStatus(BaseModel):
    """Telemetry for a single quota window."""

    limit: int
    used: int
    remaining: int
    reset_at: int = Field(..., description="UNIX epoch seconds when the window resets.")


class RateLimitStatusResponse(BaseModel):
    """Caller-facing view of the admission decision for the current request."""

    subject_type: str = Field(..., description="'user' for authenticated callers, 'ip' otherwise.")
    tier: Tier
    allowed: bool
    warning: bool
    degraded: bool = Field(
        ...,
        description="True when counts come from this instance only because the shared store is unavailable.",
    )
    hourly: RateLimitWindowStatus
    burst: RateLimitWindowStatus
