"""Pytest configuration and fixtures shared across all test modules.

This file is automatically loaded by pytest before running any tests.
It ensures that the TESTING environment variable is set to prevent
loading the .env file during tests.
"""

import asyncio
import os
from typing import Any

# CRITICAL: Set this before any imports that might load settings
# This prevents the .env file from being loaded in tests
os.environ["TESTING"] = "true"

# Tests never talk to a live Redis; apps get a fake store injected instead
os.environ.setdefault("REDIS_ENABLED", "false")
os.environ.setdefault("LOG_FORMAT", "plain")

import pytest


class FakeClock:
    """Deterministic clock used to test window expiry."""

    def __init__(self, start: float = 1_000_000.0) -> None:
        self.current = start

    def __call__(self) -> float:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += seconds


class FakeRedis:
    """Minimal async Redis stand-in for the two-window increment script.

    The registered script runs to completion without yielding between its
    commands, which mirrors Redis executing a Lua script atomically.
    """

    def __init__(self, clock: FakeClock) -> None:
        self.clock = clock
        self.values: dict[str, int] = {}
        self.expires_at: dict[str, float] = {}
        self.expire_calls: list[str] = []
        self.script_calls = 0
        self.fail_with: BaseException | None = None
        self.delay: float = 0.0
        self.reply: Any = None
        self.closed = False

    def register_script(self, script: str):
        self.script_source = script

        async def run(keys=None, args=None, client=None):
            self.script_calls += 1
            await asyncio.sleep(self.delay)
            if self.fail_with is not None:
                raise self.fail_with
            if self.reply is not None:
                return self.reply
            return self._increment_windows(list(keys), list(args))

        return run

    def _purge_expired(self, key: str) -> None:
        expires_at = self.expires_at.get(key)
        if expires_at is not None and expires_at <= self.clock():
            self.values.pop(key, None)
            self.expires_at.pop(key, None)

    def _increment_windows(self, keys: list[str], args: list[int]) -> list[int]:
        reply = [0, 0, 0, 0]
        for i, (key, ttl) in enumerate(zip(keys, args)):
            self._purge_expired(key)
            self.values[key] = self.values.get(key, 0) + 1
            if key not in self.expires_at:
                self.expires_at[key] = self.clock() + int(ttl)
                self.expire_calls.append(key)
            reply[i] = self.values[key]
            reply[i + 2] = int(round((self.expires_at[key] - self.clock()) * 1000))
        return reply

    async def ping(self) -> bool:
        if self.fail_with is not None:
            raise self.fail_with
        return True

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_redis(clock: FakeClock) -> FakeRedis:
    return FakeRedis(clock)
