from __future__ import annotations

import asyncio
from dataclasses import dataclass
import math
import time
from typing import Callable, Protocol

from redis.asyncio import Redis
from redis.exceptions import RedisError

from kbembed.core.config import Settings, get_settings
from kbembed.core.errors import RateLimitBackendError


BACKEND_REDIS = "redis"
BACKEND_MEMORY = "memory"


@dataclass(frozen=True)
class RateLimitDecision:
    # Capture the outcome and retry hint for one bucket consumption.
    allowed: bool
    tokens_remaining: float
    retry_after_seconds: int


_TOKEN_BUCKET_LUA = r"""
local now_ms = tonumber(ARGV[1])
local rate = tonumber(ARGV[2])
local burst = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])
local ttl = tonumber(ARGV[5])

local data = redis.call("HMGET", KEYS[1], "tokens", "ts")
local tokens = tonumber(data[1])
local ts = tonumber(data[2])
if tokens == nil then
  tokens = burst
  ts = now_ms
end
if now_ms < ts then
  ts = now_ms
end
tokens = math.min(burst, tokens + ((now_ms - ts) / 1000.0) * rate)

local retry_ms = 0
local allowed = tokens >= cost
if allowed then
  tokens = tokens - cost
elseif rate <= 0 then
  retry_ms = 1000
else
  retry_ms = math.ceil(((cost - tokens) / rate) * 1000)
end

redis.call("HSET", KEYS[1], "tokens", tokens, "ts", now_ms)
redis.call("EXPIRE", KEYS[1], ttl)

return {allowed and 1 or 0, tostring(tokens), retry_ms}
"""


def _calculate_tokens(
    *,
    tokens: float | None,
    last_ms: int | None,
    now_ms: int,
    rate: float,
    burst: int,
) -> float:
    # Refill tokens based on elapsed time while enforcing burst capacity.
    if tokens is None:
        tokens = float(burst)
    if last_ms is None:
        last_ms = now_ms
    if now_ms < last_ms:
        last_ms = now_ms
    delta_s = (now_ms - last_ms) / 1000.0
    return min(float(burst), tokens + (delta_s * rate))


def _retry_after_ms(tokens: float, *, rate: float, cost: int) -> int:
    # Compute retry-after using the token deficit and sustained rate.
    if tokens >= cost:
        return 0
    if rate <= 0:
        return 1000
    needed = cost - tokens
    return int(math.ceil((needed / rate) * 1000))


def _ttl_seconds(rate: float, burst: int) -> int:
    # Expire idle buckets after a conservative refill window.
    if rate <= 0:
        return max(1, burst)
    return max(1, int(math.ceil((burst / rate) * 2)))


def _retry_after_seconds(retry_ms: int) -> int:
    return max(1, int(math.ceil(retry_ms / 1000.0)))


def refill_rate(rpm: int) -> float:
    # Requests per minute expressed as tokens per second.
    return max(0, rpm) / 60.0


class ProjectRateLimiter(Protocol):
    async def consume(self, project_id: str, *, rpm: int, burst: int) -> RateLimitDecision: ...


class RedisRateLimiter:
    def __init__(
        self,
        redis: Redis,
        *,
        prefix: str,
        time_provider: Callable[[], float] | None = None,
    ) -> None:
        self._redis = redis
        self._prefix = prefix
        # Allow injecting time for deterministic tests.
        self._time_provider = time_provider or time.time

    async def consume(self, project_id: str, *, rpm: int, burst: int) -> RateLimitDecision:
        # One EVAL keeps refill, check and decrement atomic across API replicas.
        rate = refill_rate(rpm)
        now_ms = int(self._time_provider() * 1000)
        try:
            result = await self._redis.eval(
                _TOKEN_BUCKET_LUA,
                1,
                f"{self._prefix}:project:{project_id}",
                now_ms,
                rate,
                burst,
                1,
                _ttl_seconds(rate, burst),
            )
        except RedisError as exc:
            raise RateLimitBackendError("rate limit backend unavailable") from exc
        allowed = int(result[0]) == 1
        tokens = float(result[1])
        retry_ms = int(float(result[2]))
        return RateLimitDecision(
            allowed=allowed,
            tokens_remaining=tokens,
            retry_after_seconds=0 if allowed else _retry_after_seconds(retry_ms),
        )


class MemoryRateLimiter:
    """Process-local buckets for single-process development and tests."""

    def __init__(self, *, time_provider: Callable[[], float] | None = None) -> None:
        self._time_provider = time_provider or time.time
        self._buckets: dict[str, tuple[float, int]] = {}
        self._lock = asyncio.Lock()

    async def consume(self, project_id: str, *, rpm: int, burst: int) -> RateLimitDecision:
        rate = refill_rate(rpm)
        async with self._lock:
            now_ms = int(self._time_provider() * 1000)
            stored = self._buckets.get(project_id)
            tokens = _calculate_tokens(
                tokens=stored[0] if stored else None,
                last_ms=stored[1] if stored else None,
                now_ms=now_ms,
                rate=rate,
                burst=burst,
            )
            retry_ms = _retry_after_ms(tokens, rate=rate, cost=1)
            allowed = retry_ms == 0
            if allowed:
                tokens -= 1
            self._buckets[project_id] = (tokens, now_ms)
        return RateLimitDecision(
            allowed=allowed,
            tokens_remaining=tokens,
            retry_after_seconds=0 if allowed else _retry_after_seconds(retry_ms),
        )


_redis_pool: Redis | None = None
_memory_limiter: MemoryRateLimiter | None = None


def _get_redis(settings: Settings) -> Redis:
    # Cache Redis connections to avoid reconnecting per request.
    global _redis_pool
    if _redis_pool is None:
        _redis_pool = Redis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
    return _redis_pool


def get_rate_limiter(settings: Settings | None = None) -> ProjectRateLimiter:
    global _memory_limiter
    settings = settings or get_settings()
    backend = (settings.rate_limit_backend or BACKEND_REDIS).lower()
    if backend == BACKEND_MEMORY:
        if _memory_limiter is None:
            _memory_limiter = MemoryRateLimiter()
        return _memory_limiter
    return RedisRateLimiter(_get_redis(settings), prefix=settings.rl_redis_prefix)


def reset_rate_limiter_state() -> None:
    # Reset cached limiters and Redis connections for deterministic test setup.
    global _redis_pool, _memory_limiter
    _redis_pool = None
    _memory_limiter = None
