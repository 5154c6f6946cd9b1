"""Token-bucket throttling for the credential endpoints.

A bucket holds ``limit`` attempts and refills continuously at
``limit / window_seconds`` per second. The Redis limiter runs refill and
consumption in one Lua script so concurrent nodes share a bucket; the memory
limiter does the same under a lock for a single process.
"""

from __future__ import annotations

import hashlib
import math
import threading
import time
from typing import Any, Callable, Dict, NamedTuple, Protocol, Tuple

from tokenward.logging import get_logger

logger = get_logger(__name__)


class RateDecision(NamedTuple):
    allowed: bool
    remaining: int
    retry_after: int


class RateLimiter(Protocol):
    backend: str

    async def hit(self, key: str, limit: int, window_seconds: int) -> RateDecision: ...


def _bucket_key(key: str) -> str:
    # hashed so emails never appear in Redis key names
    return f"rate:{hashlib.sha256(key.encode()).hexdigest()}"


class MemoryRateLimiter:
    backend = "memory"

    def __init__(self, *, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._buckets: Dict[str, Tuple[float, float]] = {}
        self._lock = threading.Lock()

    async def hit(self, key: str, limit: int, window_seconds: int) -> RateDecision:
        refill_rate = float(limit) / float(window_seconds)
        bucket = _bucket_key(key)
        now = self._clock()
        with self._lock:
            tokens, last = self._buckets.get(bucket, (float(limit), now))
            tokens = min(float(limit), tokens + max(0.0, now - last) * refill_rate)
            if tokens < 1:
                self._buckets[bucket] = (tokens, now)
                return RateDecision(False, 0, math.ceil((1 - tokens) / refill_rate))
            tokens -= 1
            self._buckets[bucket] = (tokens, now)
        return RateDecision(True, int(tokens), 0)

    async def verify_connection(self) -> None:
        return None


class RedisRateLimiter:
    backend = "redis"

    _TOKEN_BUCKET_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local refill_rate = tonumber(ARGV[2])
local capacity = tonumber(ARGV[3])

local data = redis.call('HMGET', key, 'tokens', 'ts')
local tokens = tonumber(data[1])
local last = tonumber(data[2])
if tokens == nil or last == nil then
  tokens = capacity
  last = now
end

tokens = math.min(capacity, tokens + math.max(0, now - last) * refill_rate)

if tokens < 1 then
  redis.call('HSET', key, 'tokens', tokens, 'ts', now)
  local retry_after = math.ceil((1 - tokens) / refill_rate)
  redis.call('EXPIRE', key, math.max(retry_after, 1))
  return {0, 0, retry_after}
end

tokens = tokens - 1
redis.call('HSET', key, 'tokens', tokens, 'ts', now)
redis.call('EXPIRE', key, math.max(math.ceil(capacity / refill_rate), 1))
return {1, math.floor(tokens), 0}
"""

    def __init__(self, client: Any, *, clock: Callable[[], float] = time.time):
        self.client = client
        self._clock = clock
        self._token_bucket = client.register_script(self._TOKEN_BUCKET_SCRIPT)

    async def hit(self, key: str, limit: int, window_seconds: int) -> RateDecision:
        allowed, remaining, retry_after = await self._token_bucket(
            keys=[_bucket_key(key)],
            args=[self._clock(), float(limit) / float(window_seconds), limit],
        )
        return RateDecision(bool(int(allowed)), int(remaining), int(retry_after or 0))

    async def verify_connection(self) -> None:
        await self.client.ping()


def build_rate_limiter(token_store: Any) -> RateLimiter:
    """Share Redis with the cache token store; otherwise count in process."""
    client = getattr(token_store, "client", None)
    if getattr(token_store, "backend", None) == "redis" and client is not None:
        limiter: RateLimiter = RedisRateLimiter(client)
    else:
        limiter = MemoryRateLimiter()
    logger.info("rate_limiter_selected", backend=limiter.backend)
    return limiter


__all__ = [
    "RateDecision",
    "RateLimiter",
    "MemoryRateLimiter",
    "RedisRateLimiter",
    "build_rate_limiter",
]
