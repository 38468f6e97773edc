from __future__ import annotations

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from kbembed.core.errors import RateLimitBackendError
from kbembed.services.rate_limit import (
    MemoryRateLimiter,
    RedisRateLimiter,
    get_rate_limiter,
    refill_rate,
)
from kbembed.tests.utils.settings import make_settings


class _Clock:
    def __init__(self, now: float = 1_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.mark.asyncio
async def test_burst_then_throttle_then_refill() -> None:
    clock = _Clock()
    limiter = MemoryRateLimiter(time_provider=clock)
    results = [await limiter.consume("p-1", rpm=60, burst=5) for _ in range(6)]
    assert [r.allowed for r in results] == [True] * 5 + [False]
    assert results[-1].retry_after_seconds == 1

    clock.now += 1.0
    refilled = await limiter.consume("p-1", rpm=60, burst=5)
    assert refilled.allowed
    assert (await limiter.consume("p-1", rpm=60, burst=5)).allowed is False


@pytest.mark.asyncio
async def test_buckets_are_per_project() -> None:
    limiter = MemoryRateLimiter(time_provider=_Clock())
    assert (await limiter.consume("p-1", rpm=60, burst=1)).allowed
    assert not (await limiter.consume("p-1", rpm=60, burst=1)).allowed
    assert (await limiter.consume("p-2", rpm=60, burst=1)).allowed


@pytest.mark.asyncio
async def test_zero_rate_denies_after_burst_with_one_second_hint() -> None:
    limiter = MemoryRateLimiter(time_provider=_Clock())
    assert (await limiter.consume("p-1", rpm=0, burst=1)).allowed
    denied = await limiter.consume("p-1", rpm=0, burst=1)
    assert not denied.allowed
    assert denied.retry_after_seconds == 1


def test_refill_rate_is_per_second() -> None:
    assert refill_rate(120) == 2.0
    assert refill_rate(-5) == 0.0


class _FailingRedis:
    async def eval(self, *args, **kwargs):
        raise RedisConnectionError("down")


class _ScriptRedis:
    def __init__(self, reply) -> None:
        self.reply = reply
        self.args = None

    async def eval(self, *args):
        self.args = args
        return self.reply


@pytest.mark.asyncio
async def test_redis_errors_surface_as_backend_error() -> None:
    limiter = RedisRateLimiter(_FailingRedis(), prefix="kb:rl")
    with pytest.raises(RateLimitBackendError):
        await limiter.consume("p-1", rpm=60, burst=5)


@pytest.mark.asyncio
async def test_redis_reply_is_decoded() -> None:
    redis = _ScriptRedis([0, "0.25", 750])
    limiter = RedisRateLimiter(redis, prefix="kb:rl", time_provider=lambda: 10.0)
    decision = await limiter.consume("p-1", rpm=60, burst=5)
    assert not decision.allowed
    assert decision.tokens_remaining == 0.25
    assert decision.retry_after_seconds == 1
    assert redis.args[2] == "kb:rl:project:p-1"
    assert redis.args[3] == 10_000


def test_memory_backend_is_shared_per_process() -> None:
    settings = make_settings(rate_limit_backend="memory")
    assert get_rate_limiter(settings) is get_rate_limiter(settings)
