"""Per-identity request admission against the upstream budget.

The shared limiter keeps a sliding window of request timestamps per identity
in a Redis sorted set. When Redis cannot be reached, admission falls back to a
local fixed-window counter so traffic is never blocked by the store being
down. The fixed window can admit up to twice the budget around a window
boundary, and counts are not reconciled when switching between the two.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable

from redis.asyncio import Redis
from redis.exceptions import RedisError

from marketsync.schemas.state import RateLimitDecision

logger = logging.getLogger(__name__)

Clock = Callable[[], int]


def _now_ms() -> int:
    return int(time.time() * 1000)


class RateLimiter(ABC):
    @abstractmethod
    async def check_and_reserve(
        self, identity: str, window_ms: int, max_requests: int
    ) -> RateLimitDecision:
        """Admit or reject one request for ``identity``, recording it if admitted."""

    async def close(self) -> None:
        return None


# Purge, count and conditional insert run as one script so concurrent callers
# sharing an identity cannot both observe "under limit".
_SLIDING_WINDOW_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])
redis.call('ZREMRANGEBYSCORE', key, 0, now - window)
local count = redis.call('ZCARD', key)
if count < limit then
  redis.call('ZADD', key, now, ARGV[4])
  redis.call('PEXPIRE', key, window)
  return {1, limit - count - 1, 0, now + window}
end
local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
local reset = now + window
if oldest[2] then
  reset = tonumber(oldest[2]) + window
end
return {0, 0, reset - now, reset}
"""


class RedisRateLimiter(RateLimiter):
    """Sliding-window limiter shared by every process using the same Redis."""

    def __init__(self, client: Redis, clock: Clock = _now_ms, key_prefix: str = "rate_limit") -> None:
        self._client = client
        self._clock = clock
        self._key_prefix = key_prefix
        self._script = client.register_script(_SLIDING_WINDOW_SCRIPT)

    @classmethod
    def from_url(cls, url: str, timeout: float = 0.5, **kwargs) -> "RedisRateLimiter":
        client = Redis.from_url(url, socket_timeout=timeout, socket_connect_timeout=timeout)
        return cls(client, **kwargs)

    def _key(self, identity: str) -> str:
        return f"{self._key_prefix}:{identity}"

    async def check_and_reserve(
        self, identity: str, window_ms: int, max_requests: int
    ) -> RateLimitDecision:
        now = self._clock()
        member = f"{now}-{uuid.uuid4().hex}"
        allowed, remaining, retry_after, reset_at = await self._script(
            keys=[self._key(identity)],
            args=[now, window_ms, max_requests, member],
        )
        if not allowed:
            logger.warning("Rate limit exceeded for %s: %d/%d", identity, max_requests, max_requests)
        return RateLimitDecision(
            allowed=bool(allowed),
            remaining=int(remaining),
            retry_after_ms=max(1, int(retry_after)) if not allowed else 0,
            reset_at_ms=int(reset_at),
            backend="redis",
        )

    async def close(self) -> None:
        await self._client.aclose()


@dataclass
class _Bucket:
    count: int
    reset_at_ms: int


class MemoryRateLimiter(RateLimiter):
    """Process-local fixed-window limiter keyed by identity and window bucket."""

    def __init__(self, clock: Clock = _now_ms) -> None:
        self._clock = clock
        self._buckets: dict[str, _Bucket] = {}

    def _purge(self, now: int) -> None:
        expired = [key for key, bucket in self._buckets.items() if bucket.reset_at_ms <= now]
        for key in expired:
            del self._buckets[key]

    async def check_and_reserve(
        self, identity: str, window_ms: int, max_requests: int
    ) -> RateLimitDecision:
        now = self._clock()
        self._purge(now)
        window_index = now // window_ms
        key = f"{identity}:{window_index}"
        bucket = self._buckets.get(key)
        if bucket is None:
            bucket = _Bucket(count=0, reset_at_ms=(window_index + 1) * window_ms)
            self._buckets[key] = bucket

        if bucket.count >= max_requests:
            return RateLimitDecision(
                allowed=False,
                remaining=0,
                retry_after_ms=max(1, bucket.reset_at_ms - now),
                reset_at_ms=bucket.reset_at_ms,
                backend="memory",
            )

        bucket.count += 1
        return RateLimitDecision(
            allowed=True,
            remaining=max_requests - bucket.count,
            reset_at_ms=bucket.reset_at_ms,
            backend="memory",
        )


class FailoverRateLimiter(RateLimiter):
    """Routes checks to the shared limiter while its store is reachable.

    Any store error flips the connectivity flag and the request is answered by
    the fallback instead. While disconnected the store is retried at most once
    per ``reconnect_interval`` seconds.
    """

    def __init__(
        self,
        primary: RateLimiter,
        fallback: RateLimiter | None = None,
        timeout: float = 0.5,
        reconnect_interval: float = 3.0,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.primary = primary
        self.fallback = fallback or MemoryRateLimiter()
        self.timeout = timeout
        self.reconnect_interval = reconnect_interval
        self._monotonic = monotonic
        self._connected = True
        self._retry_at = 0.0

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def mode(self) -> str:
        return "redis" if self._connected else "memory"

    def mark_connected(self) -> None:
        if not self._connected:
            logger.info("Rate limit store reachable again, leaving fallback limiter")
        self._connected = True

    def mark_disconnected(self, reason: str = "unavailable") -> None:
        if self._connected:
            logger.warning("Rate limit store %s, using fallback rate limiter", reason)
        self._connected = False
        self._retry_at = self._monotonic() + self.reconnect_interval

    async def check_and_reserve(
        self, identity: str, window_ms: int, max_requests: int
    ) -> RateLimitDecision:
        if self._connected or self._monotonic() >= self._retry_at:
            try:
                decision = await asyncio.wait_for(
                    self.primary.check_and_reserve(identity, window_ms, max_requests),
                    timeout=self.timeout,
                )
            except (RedisError, OSError, asyncio.TimeoutError) as exc:
                self.mark_disconnected(f"error ({type(exc).__name__}: {exc})")
            else:
                self.mark_connected()
                return decision
        return await self.fallback.check_and_reserve(identity, window_ms, max_requests)

    async def close(self) -> None:
        await self.primary.close()
        await self.fallback.close()
