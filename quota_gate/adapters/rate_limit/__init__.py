"""Rate limiting adapters.

This package provides the counter backends behind admission control: the
shared Redis counter, the per-instance fallback counter used while Redis is
unreachable, and the in-memory guard for authentication routes.
"""

from quota_gate.adapters.rate_limit.base import (
    AbstractRateLimiter,
    AbstractWindowCounter,
    CounterKey,
    IncrementOutcome,
    RateLimitResult,
    StoreUnavailable,
    WindowCounts,
    WindowKind,
    counter_keys,
)
from quota_gate.adapters.rate_limit.in_memory import InMemoryWindowCounter
from quota_gate.adapters.rate_limit.login_guard import LoginAttemptGuard
from quota_gate.adapters.rate_limit.redis_store import RedisWindowCounter, create_redis_client

__all__ = [
    "AbstractRateLimiter",
    "AbstractWindowCounter",
    "CounterKey",
    "IncrementOutcome",
    "InMemoryWindowCounter",
    "LoginAttemptGuard",
    "RateLimitResult",
    "RedisWindowCounter",
    "StoreUnavailable",
    "WindowCounts",
    "WindowKind",
    "counter_keys",
    "create_redis_client",
]
