"""Unit tests for the admission limiter and degraded-mode handling."""

import asyncio
import logging
from unittest.mock import AsyncMock

import pytest
from prometheus_client import REGISTRY
from redis.exceptions import ConnectionError as RedisConnectionError

from quota_gate.adapters.rate_limit.base import StoreUnavailable
from quota_gate.adapters.rate_limit.in_memory import InMemoryWindowCounter
from quota_gate.adapters.rate_limit.redis_store import RedisWindowCounter
from quota_gate.core.errors import AdmissionInternalError
from quota_gate.schemas.rate_limit import DEFAULT_TIER_POLICIES, Tier
from quota_gate.services.identity import RateSubject
from quota_gate.services.limiter import AdmissionLimiter, DegradedModeTracker
from quota_gate.services.policy import PolicyTable

FREE_USER = RateSubject(id="user:42", tier=Tier.FREE)


def _limiter(clock, store=None, **kwargs) -> AdmissionLimiter:
    return AdmissionLimiter(
        policies=PolicyTable(),
        store=store,
        fallback=InMemoryWindowCounter(clock=clock),
        clock=clock,
        monotonic=clock,
        **kwargs,
    )


def _activations() -> float:
    return REGISTRY.get_sample_value("quota_gate_degraded_mode_activations_total") or 0.0


class TestAdmission:
    @pytest.mark.asyncio
    async def test_burst_limit_rejects_eleventh_request(self, clock, fake_redis) -> None:
        limiter = _limiter(clock, RedisWindowCounter(fake_redis))

        results = []
        for _ in range(80):
            results.append(await limiter.admit(FREE_USER))
            clock.advance(0.5)

        assert all(r.decision.allowed for r in results[:10])
        assert [r.decision.burst_count for r in results[:10]] == list(range(1, 11))
        eleventh = results[10].decision
        assert eleventh.allowed is False
        assert eleventh.hourly_count == 11
        assert 0 < eleventh.retry_after <= 60
        assert not any(r.decision.allowed for r in results[10:])

    @pytest.mark.asyncio
    async def test_hourly_limit_and_reset(self, clock, fake_redis) -> None:
        limiter = _limiter(clock, RedisWindowCounter(fake_redis))

        # One request every 35 seconds stays under the burst limit and keeps
        # all 100 requests inside the first hour.
        for i in range(100):
            result = await limiter.admit(FREE_USER)
            assert result.decision.allowed, f"request {i + 1} rejected"
            clock.advance(35)

        over = await limiter.admit(FREE_USER)
        assert over.decision.allowed is False
        assert over.decision.hourly_count == 101
        assert over.decision.retry_after <= 3600

        clock.advance(3600)
        after = await limiter.admit(FREE_USER)
        assert after.decision.allowed is True
        assert after.decision.hourly_count == 1

    @pytest.mark.asyncio
    async def test_concurrent_requests_admit_at_most_burst_limit(self, clock, fake_redis) -> None:
        limiter = _limiter(clock, RedisWindowCounter(fake_redis))

        results = await asyncio.gather(*(limiter.admit(FREE_USER) for _ in range(30)))

        assert sum(r.decision.allowed for r in results) == 10
        assert sorted(r.decision.burst_count for r in results) == list(range(1, 31))

    @pytest.mark.asyncio
    async def test_unknown_tier_uses_free_policy(self, clock) -> None:
        limiter = _limiter(clock)

        result = await limiter.admit(RateSubject(id="user:1", tier="bogus"))  # type: ignore[arg-type]

        assert result.policy == DEFAULT_TIER_POLICIES[Tier.FREE]

    @pytest.mark.asyncio
    async def test_tier_policy_applies(self, clock) -> None:
        limiter = _limiter(clock)

        result = await limiter.admit(RateSubject(id="user:1", tier=Tier.PRO))

        assert result.decision.limit == 1000
        assert result.decision.burst_limit == 50

    @pytest.mark.asyncio
    async def test_instances_are_isolated(self, clock) -> None:
        first = _limiter(clock)
        second = _limiter(clock)

        for _ in range(5):
            await first.admit(FREE_USER)

        result = await second.admit(FREE_USER)
        assert result.decision.hourly_count == 1

    @pytest.mark.asyncio
    async def test_no_store_counts_locally_without_degraded_flag(self, clock) -> None:
        limiter = _limiter(clock, store=None)

        result = await limiter.admit(FREE_USER)

        assert result.degraded is False
        assert result.decision.hourly_count == 1


class TestDegradedMode:
    @pytest.mark.asyncio
    async def test_store_failure_falls_back_and_logs_once(self, clock, fake_redis, caplog) -> None:
        caplog.set_level(logging.WARNING, logger="quota_gate.services.limiter")
        fake_redis.fail_with = RedisConnectionError("refused")
        limiter = _limiter(clock, RedisWindowCounter(fake_redis))
        before = _activations()

        results = [await limiter.admit(FREE_USER) for _ in range(5)]

        assert all(r.degraded for r in results)
        assert [r.decision.hourly_count for r in results] == [1, 2, 3, 4, 5]
        entered = [r for r in caplog.records if r.getMessage() == "rate_limit.degraded_mode_entered"]
        assert len(entered) == 1
        assert entered[0].reason == "connection"
        assert _activations() - before == 1
        assert limiter.degraded is True

    @pytest.mark.asyncio
    async def test_cooldown_skips_store(self, clock, fake_redis) -> None:
        fake_redis.fail_with = RedisConnectionError("refused")
        limiter = _limiter(clock, RedisWindowCounter(fake_redis), cooldown_seconds=30)

        for _ in range(5):
            await limiter.admit(FREE_USER)
            clock.advance(1)

        assert fake_redis.script_calls == 1

    @pytest.mark.asyncio
    async def test_failed_retry_after_cooldown_stays_in_same_episode(self, clock, fake_redis) -> None:
        fake_redis.fail_with = RedisConnectionError("refused")
        limiter = _limiter(clock, RedisWindowCounter(fake_redis), cooldown_seconds=30)

        await limiter.admit(FREE_USER)
        clock.advance(31)
        await limiter.admit(FREE_USER)

        assert fake_redis.script_calls == 2
        assert limiter.tracker.episodes == 1

    @pytest.mark.asyncio
    async def test_successful_retry_after_cooldown_recovers(self, clock, fake_redis, caplog) -> None:
        caplog.set_level(logging.INFO, logger="quota_gate.services.limiter")
        fake_redis.fail_with = RedisConnectionError("refused")
        limiter = _limiter(clock, RedisWindowCounter(fake_redis), cooldown_seconds=30)

        await limiter.admit(FREE_USER)
        fake_redis.fail_with = None
        clock.advance(31)
        recovered = await limiter.admit(FREE_USER)

        assert recovered.degraded is False
        assert recovered.decision.hourly_count == 1  # shared store never saw the fallback count
        assert limiter.degraded is False
        assert any(r.getMessage() == "rate_limit.degraded_mode_exited" for r in caplog.records)

        fake_redis.fail_with = RedisConnectionError("refused again")
        await limiter.admit(FREE_USER)
        assert limiter.tracker.episodes == 2

    @pytest.mark.asyncio
    async def test_timeout_triggers_fallback(self, clock, fake_redis) -> None:
        fake_redis.delay = 0.5
        limiter = _limiter(clock, RedisWindowCounter(fake_redis, command_timeout=0.05))

        result = await limiter.admit(FREE_USER)

        assert result.degraded is True
        assert result.decision.allowed is True

    @pytest.mark.asyncio
    async def test_fallback_failure_raises_internal_error(self, clock) -> None:
        store = AsyncMock()
        store.increment_windows.return_value = StoreUnavailable(reason="connection")
        fallback = InMemoryWindowCounter(clock=clock)
        fallback.increment_windows = AsyncMock(side_effect=RuntimeError("boom"))  # type: ignore[method-assign]
        limiter = AdmissionLimiter(policies=PolicyTable(), store=store, fallback=fallback, clock=clock)

        with pytest.raises(AdmissionInternalError) as exc_info:
            await limiter.admit(FREE_USER)

        assert exc_info.value.code == "rate_limiter_unavailable"


class TestDegradedModeTracker:
    def test_healthy_always_uses_store(self, clock) -> None:
        tracker = DegradedModeTracker(cooldown_seconds=30, clock=clock)

        assert tracker.should_use_store() is True
        assert tracker.should_use_store() is True

    def test_only_one_store_attempt_per_cooldown(self, clock) -> None:
        tracker = DegradedModeTracker(cooldown_seconds=30, clock=clock)

        assert tracker.record_failure() is True
        assert tracker.should_use_store() is False

        clock.advance(30)
        assert tracker.should_use_store() is True
        assert tracker.should_use_store() is False

    def test_repeated_failures_are_one_episode(self, clock) -> None:
        tracker = DegradedModeTracker(cooldown_seconds=30, clock=clock)

        assert tracker.record_failure() is True
        assert tracker.record_failure() is False
        assert tracker.record_success() is True
        assert tracker.record_success() is False
        assert tracker.episodes == 1

    def test_rejects_negative_cooldown(self) -> None:
        with pytest.raises(ValueError):
            DegradedModeTracker(cooldown_seconds=-1)
