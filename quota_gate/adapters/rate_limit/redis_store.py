"""Two-window counter backed by Redis.

Both windows of a subject are incremented by one Lua script, which Redis runs
atomically: no other command interleaves, so concurrent requests are never
lost, double counted or observed half-applied. The script validates both keys
before mutating anything, so a failing call leaves both counters untouched.

Expiry is armed only when a counter has none, which is the case exactly for
the increment that created it. Later increments never extend the window.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

import redis.asyncio as redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError

from quota_gate.adapters.rate_limit.base import (
    AbstractWindowCounter,
    IncrementOutcome,
    StoreUnavailable,
    WindowCounts,
    counter_keys,
)
from quota_gate.core.config import RedisSettings
from quota_gate.core.metrics import observe_store_latency

logger = logging.getLogger(__name__)

# KEYS[1] = hourly counter key, KEYS[2] = burst counter key
# ARGV[1] = hourly window (seconds), ARGV[2] = burst window (seconds)
# Returns: [hourly_count, burst_count, hourly_pttl_ms, burst_pttl_ms]
INCREMENT_WINDOWS_SCRIPT = """
for i = 1, 2 do
    local current = redis.call('GET', KEYS[i])
    if current and not tonumber(current) then
        return redis.error_reply('ERR non-integer counter at ' .. KEYS[i])
    end
end

local result = {}
for i = 1, 2 do
    local count = redis.call('INCR', KEYS[i])
    local pttl = redis.call('PTTL', KEYS[i])
    if pttl < 0 then
        redis.call('EXPIRE', KEYS[i], ARGV[i])
        pttl = tonumber(ARGV[i]) * 1000
    end
    result[i] = count
    result[i + 2] = pttl
end

return result
"""


def create_redis_client(redis_settings: RedisSettings) -> redis.Redis:
    """Build an async Redis client with bounded connect/command timeouts."""
    kwargs: dict[str, Any] = {
        "socket_connect_timeout": redis_settings.connect_timeout_seconds,
        "socket_timeout": redis_settings.command_timeout_seconds,
        "retry_on_timeout": False,
        "decode_responses": True,
    }
    if redis_settings.password:
        kwargs["password"] = redis_settings.password
    return redis.Redis.from_url(redis_settings.url, **kwargs)


def _parse_reply(reply: Any) -> WindowCounts | None:
    if not isinstance(reply, (list, tuple)) or len(reply) != 4:
        return None
    try:
        hourly_count, burst_count, hourly_pttl, burst_pttl = (int(v) for v in reply)
    except (TypeError, ValueError):
        return None
    if hourly_count < 1 or burst_count < 1:
        return None
    return WindowCounts(
        hourly_count=hourly_count,
        burst_count=burst_count,
        hourly_ttl=hourly_pttl / 1000 if hourly_pttl > 0 else None,
        burst_ttl=burst_pttl / 1000 if burst_pttl > 0 else None,
    )


class RedisWindowCounter(AbstractWindowCounter):
    """Cluster-wide counter using an atomic Lua script."""

    def __init__(
        self,
        redis_client: redis.Redis,
        *,
        key_prefix: str = "ratelimit:",
        command_timeout: float = 0.25,
    ) -> None:
        if command_timeout <= 0:
            raise ValueError("command_timeout must be > 0")

        self._redis = redis_client
        self._script = redis_client.register_script(INCREMENT_WINDOWS_SCRIPT)
        self._key_prefix = key_prefix
        self._command_timeout = command_timeout

    async def increment_windows(
        self,
        subject_id: str,
        *,
        hourly_ttl: int,
        burst_ttl: int,
    ) -> IncrementOutcome:
        """Increment both windows in one atomic round trip.

        Never raises for store failures: timeouts, connection and protocol
        errors, and unexpected replies all come back as StoreUnavailable.
        """
        hourly_key, burst_key = counter_keys(subject_id)
        keys = [hourly_key.render(self._key_prefix), burst_key.render(self._key_prefix)]

        start = time.perf_counter()
        outcome = await self._run_script(keys, [hourly_ttl, burst_ttl])
        observe_store_latency(
            time.perf_counter() - start,
            "unavailable" if isinstance(outcome, StoreUnavailable) else "ok",
        )
        return outcome

    async def _run_script(self, keys: list[str], args: list[int]) -> IncrementOutcome:
        try:
            reply = await asyncio.wait_for(
                self._script(keys=keys, args=args),
                timeout=self._command_timeout,
            )
        except (asyncio.TimeoutError, RedisTimeoutError):
            return StoreUnavailable(
                reason="timeout",
                detail=f"no reply within {self._command_timeout}s",
            )
        except (RedisConnectionError, OSError) as exc:
            return StoreUnavailable(reason="connection", detail=type(exc).__name__)
        except RedisError as exc:
            return StoreUnavailable(reason="error", detail=f"{type(exc).__name__}: {exc}")

        counts = _parse_reply(reply)
        if counts is None:
            logger.warning(
                "rate_limit.store_malformed_reply",
                extra={"reply_type": type(reply).__name__},
            )
            return StoreUnavailable(reason="malformed_reply", detail=repr(reply)[:100])
        return counts

    async def ping(self) -> bool:
        """Return True when the store answers a PING within the command timeout."""
        try:
            return bool(
                await asyncio.wait_for(self._redis.ping(), timeout=self._command_timeout)
            )
        except (asyncio.TimeoutError, RedisError, OSError):
            return False

    async def close(self) -> None:
        await self._redis.aclose()
