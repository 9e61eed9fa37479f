from __future__ import annotations

import asyncio
import logging
from functools import partial
from typing import Protocol, Union

from marketsync.errors import MarketDataError, RateLimitError
from marketsync.loading import LoadingTracker
from marketsync.retry import retry_delay
from marketsync.schemas.provider import MarketDataSnapshot, normalize_symbol
from marketsync.schemas.state import LoadingState
from marketsync.service import MarketDataService

logger = logging.getLogger(__name__)

Update = Union[MarketDataSnapshot, LoadingState]


class Subscriber(Protocol):
    def on_update(self, symbol: str, update: Update) -> None:  # pragma: no cover - interface only
        ...


class FetchScheduler:
    """Keeps the one symbol of interest fresh.

    Interest changes are debounced; once a symbol has been stable for
    ``debounce_delay`` seconds it is fetched and then refreshed every
    ``refresh_interval`` seconds until interest moves elsewhere. Must be used
    from inside a running event loop.
    """

    def __init__(
        self,
        service: MarketDataService,
        subscriber: Subscriber,
        debounce_delay: float = 0.5,
        refresh_interval: float = 120.0,
        identity: str = "default",
    ) -> None:
        self.service = service
        self.subscriber = subscriber
        self.debounce_delay = debounce_delay
        self.refresh_interval = refresh_interval
        self.identity = identity
        self._active: str | None = None
        self._debounce_handle: asyncio.TimerHandle | None = None
        self._refresh_handle: asyncio.TimerHandle | None = None
        self._running: dict[str, asyncio.Task] = {}
        self._trackers: dict[str, LoadingTracker] = {}
        self._cooldown_until = 0.0
        self._rate_limit_strikes = 0
        self._closed = False

    @property
    def active_symbol(self) -> str | None:
        return self._active

    def state(self, symbol: str) -> LoadingState:
        tracker = self._trackers.get(normalize_symbol(symbol))
        return tracker.state if tracker else LoadingState()

    def on_interest(self, symbol: str) -> None:
        if self._closed:
            raise RuntimeError("Scheduler is closed.")
        symbol = normalize_symbol(symbol)
        self._cancel_timers()
        if symbol != self._active:
            self._cooldown_until = 0.0
            self._rate_limit_strikes = 0
        self._active = symbol
        loop = asyncio.get_running_loop()
        self._debounce_handle = loop.call_later(self.debounce_delay, self._on_debounce, symbol)
        logger.debug("Interest in %s, fetching in %.2fs", symbol, self.debounce_delay)

    def on_disinterest(self) -> None:
        self._cancel_timers()
        if self._active is not None:
            logger.debug("Interest in %s dropped", self._active)
        self._active = None

    def close(self) -> None:
        self.on_disinterest()
        self._closed = True

    async def drain(self) -> None:
        """Wait for fetches that are still in flight."""
        while self._running:
            await asyncio.gather(*self._running.values(), return_exceptions=True)

    def _cancel_timers(self) -> None:
        if self._debounce_handle is not None:
            self._debounce_handle.cancel()
            self._debounce_handle = None
        if self._refresh_handle is not None:
            self._refresh_handle.cancel()
            self._refresh_handle = None

    def _on_debounce(self, symbol: str) -> None:
        self._debounce_handle = None
        if symbol != self._active:
            return
        self._arm_refresh(symbol)
        if not self._cooling_down(symbol):
            self._start_fetch(symbol)

    def _arm_refresh(self, symbol: str) -> None:
        loop = asyncio.get_running_loop()
        self._refresh_handle = loop.call_later(self.refresh_interval, self._on_refresh_due, symbol)

    def _cooling_down(self, symbol: str) -> bool:
        now = asyncio.get_running_loop().time()
        if now < self._cooldown_until:
            logger.info("Skipping fetch of %s, rate limited for %.1fs", symbol, self._cooldown_until - now)
            return True
        return False

    def _on_refresh_due(self, symbol: str) -> None:
        self._refresh_handle = None
        if symbol != self._active:
            return
        self._arm_refresh(symbol)
        if self._cooling_down(symbol):
            return
        if symbol in self._running:
            logger.debug("Skipping refresh of %s, fetch still running", symbol)
            return
        self._start_fetch(symbol)

    def _start_fetch(self, symbol: str) -> None:
        task = asyncio.get_running_loop().create_task(self._fetch(symbol))
        self._running[symbol] = task
        task.add_done_callback(partial(self._forget, symbol))

    def _forget(self, symbol: str, task: asyncio.Task) -> None:
        if self._running.get(symbol) is task:
            del self._running[symbol]

    def _tracker(self, symbol: str) -> LoadingTracker:
        tracker = self._trackers.get(symbol)
        if tracker is None:
            tracker = LoadingTracker(partial(self._publish, symbol))
            self._trackers[symbol] = tracker
        return tracker

    async def _fetch(self, symbol: str) -> None:
        tracker = self._tracker(symbol)
        before = tracker.state
        try:
            snapshot = await self.service.get_snapshot(symbol, self.identity, tracker)
        except MarketDataError as exc:
            # A fetch joined from another caller never touched this tracker.
            if tracker.state is before:
                tracker.fail(exc)
            if isinstance(exc, RateLimitError):
                self._back_off(exc)
            return
        self._rate_limit_strikes = 0
        self._publish(symbol, snapshot)

    def _back_off(self, exc: RateLimitError) -> None:
        self._rate_limit_strikes += 1
        delay = max(
            exc.retry_after_ms / 1000,
            retry_delay(exc, self._rate_limit_strikes, self.service.retry_base_delay, self.service.retry_max_delay),
        )
        self._cooldown_until = asyncio.get_running_loop().time() + delay
        logger.warning("Rate limited, pausing refreshes for %.1fs", delay)

    def _publish(self, symbol: str, update: Update) -> None:
        if symbol != self._active:
            return
        try:
            self.subscriber.on_update(symbol, update)
        except Exception:
            logger.exception("Subscriber failed to handle update for %s", symbol)
