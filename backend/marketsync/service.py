from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

from marketsync.cache import SnapshotCache
from marketsync.config.settings import Settings
from marketsync.dedup import RequestDeduplicator
from marketsync.errors import RateLimitError
from marketsync.loading import LoadingTracker
from marketsync.providers.base import MarketDataAdapter
from marketsync.ratelimit import FailoverRateLimiter, RateLimiter, RedisRateLimiter
from marketsync.retry import execute_with_retry
from marketsync.schemas.provider import MarketDataSnapshot, normalize_symbol

logger = logging.getLogger(__name__)


class MarketDataService:
    """Cache, deduplicator, rate limiter and adapter wired into one fetch path.

    Each instance owns its own state; nothing is shared between instances
    except what the rate limiter's backing store shares.
    """

    def __init__(
        self,
        adapter: MarketDataAdapter,
        cache: SnapshotCache,
        rate_limiter: RateLimiter,
        *,
        window_ms: int = 60_000,
        max_requests: int = 50,
        max_retries: int = 3,
        retry_base_delay: float = 1.0,
        retry_max_delay: float = 10.0,
        request_timeout: float = 10.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.adapter = adapter
        self.cache = cache
        self.rate_limiter = rate_limiter
        self.dedup = RequestDeduplicator()
        self.window_ms = window_ms
        self.max_requests = max_requests
        self.max_retries = max_retries
        self.retry_base_delay = retry_base_delay
        self.retry_max_delay = retry_max_delay
        self.request_timeout = request_timeout
        self._sleep = sleep

    @classmethod
    def from_settings(cls, config: Settings, adapter: MarketDataAdapter | None = None) -> "MarketDataService":
        if adapter is None:
            from marketsync.providers.yahoo import YahooFinanceAdapter

            adapter = YahooFinanceAdapter(config.providers, timeout=config.sync.request_timeout_seconds)
        limiter = FailoverRateLimiter(
            RedisRateLimiter.from_url(config.redis_url, timeout=config.rate_limit.redis_timeout_seconds),
            timeout=config.rate_limit.redis_timeout_seconds,
            reconnect_interval=config.rate_limit.reconnect_interval_seconds,
        )
        return cls(
            adapter,
            SnapshotCache(config.sync.cache_ttl_seconds),
            limiter,
            window_ms=config.rate_limit.window_ms,
            max_requests=config.rate_limit.max_requests,
            max_retries=config.sync.max_retries,
            retry_base_delay=config.sync.retry_base_delay_seconds,
            retry_max_delay=config.sync.retry_max_delay_seconds,
            request_timeout=config.sync.request_timeout_seconds,
        )

    def start(self) -> None:
        self.cache.start()

    async def close(self) -> None:
        await self.cache.close()
        await self.rate_limiter.close()

    async def get_snapshot(
        self,
        symbol: str,
        identity: str = "default",
        tracker: LoadingTracker | None = None,
    ) -> MarketDataSnapshot:
        """Return a fresh snapshot, fetching it only when the cache has none.

        Concurrent callers for the same symbol share one fetch; only that
        fetch consumes rate-limit budget.
        """
        symbol = normalize_symbol(symbol)
        cached = self.cache.get(symbol)
        if cached is not None:
            logger.debug("Cache hit for %s", symbol)
            return cached
        return await self.dedup.execute(symbol, lambda: self._load(symbol, identity, tracker))

    async def _load(self, symbol: str, identity: str, tracker: LoadingTracker | None) -> MarketDataSnapshot:
        cached = self.cache.get(symbol)
        if cached is not None:
            return cached
        outcome = await execute_with_retry(
            lambda: self._attempt(symbol, identity),
            self.max_retries,
            self.retry_base_delay,
            max_delay=self.retry_max_delay,
            tracker=tracker,
            sleep=self._sleep,
            context=f"Fetch {symbol}",
        )
        self.cache.put(symbol, outcome.value)
        if outcome.retry_count:
            logger.info("Fetched %s after %d retries", symbol, outcome.retry_count)
        return outcome.value

    async def _attempt(self, symbol: str, identity: str) -> MarketDataSnapshot:
        decision = await self.rate_limiter.check_and_reserve(identity, self.window_ms, self.max_requests)
        if not decision.allowed:
            raise RateLimitError(decision.retry_after_ms, f"{identity} exhausted {decision.backend} budget")
        return await asyncio.wait_for(self.adapter.fetch(symbol), timeout=self.request_timeout)
