import asyncio

import pytest

from marketsync.cache import SnapshotCache
from marketsync.errors import ErrorKind, NetworkError, ValidationError
from marketsync.ratelimit import MemoryRateLimiter
from marketsync.scheduler import FetchScheduler
from marketsync.schemas.provider import MarketDataSnapshot
from marketsync.schemas.state import LoadingState
from marketsync.service import MarketDataService


class FakeAdapter:
    name = "fake"

    def __init__(self, delay: float = 0.0, failures: list[Exception] | None = None) -> None:
        self.delay = delay
        self.failures = list(failures or [])
        self.calls: list[str] = []

    async def fetch(self, symbol: str) -> MarketDataSnapshot:
        self.calls.append(symbol)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.failures:
            raise self.failures.pop(0)
        return MarketDataSnapshot(symbol=symbol, provider=self.name, current_price=42.0)


class RecordingSubscriber:
    def __init__(self) -> None:
        self.updates: list[tuple[str, object]] = []

    def on_update(self, symbol: str, update) -> None:
        self.updates.append((symbol, update))

    def snapshots(self) -> list[str]:
        return [symbol for symbol, update in self.updates if isinstance(update, MarketDataSnapshot)]


async def no_sleep(delay: float) -> None:
    return None


def build_scheduler(
    adapter: FakeAdapter,
    subscriber: RecordingSubscriber,
    cache_ttl: float = 60.0,
    max_requests: int = 50,
    max_retries: int = 3,
    debounce_delay: float = 0.05,
    refresh_interval: float = 10.0,
) -> FetchScheduler:
    service = MarketDataService(
        adapter,
        SnapshotCache(ttl_seconds=cache_ttl),
        MemoryRateLimiter(clock=lambda: 1_000),
        max_requests=max_requests,
        max_retries=max_retries,
        sleep=no_sleep,
    )
    return FetchScheduler(
        service,
        subscriber,
        debounce_delay=debounce_delay,
        refresh_interval=refresh_interval,
    )


def test_only_last_symbol_in_burst_is_fetched() -> None:
    adapter = FakeAdapter()
    subscriber = RecordingSubscriber()

    async def scenario():
        scheduler = build_scheduler(adapter, subscriber, debounce_delay=0.05)
        scheduler.on_interest("A")
        await asyncio.sleep(0.01)
        scheduler.on_interest("B")
        await asyncio.sleep(0.01)
        scheduler.on_interest("C")
        await asyncio.sleep(0.1)
        await scheduler.drain()
        scheduler.close()

    asyncio.run(scenario())

    assert adapter.calls == ["C"]
    assert subscriber.snapshots() == ["C"]


def test_disinterest_cancels_pending_fetch() -> None:
    adapter = FakeAdapter()
    subscriber = RecordingSubscriber()

    async def scenario():
        scheduler = build_scheduler(adapter, subscriber)
        scheduler.on_interest("AAPL")
        scheduler.on_disinterest()
        await asyncio.sleep(0.1)
        return scheduler.active_symbol

    assert asyncio.run(scenario()) is None
    assert adapter.calls == []
    assert subscriber.updates == []


def test_periodic_refresh_until_disinterest() -> None:
    adapter = FakeAdapter()
    subscriber = RecordingSubscriber()

    async def scenario():
        scheduler = build_scheduler(
            adapter, subscriber, cache_ttl=0.001, debounce_delay=0.01, refresh_interval=0.03
        )
        scheduler.on_interest("AAPL")
        await asyncio.sleep(0.12)
        scheduler.on_disinterest()
        await scheduler.drain()
        fetched = len(adapter.calls)
        await asyncio.sleep(0.1)
        return fetched

    fetched = asyncio.run(scenario())

    assert fetched >= 3
    assert len(adapter.calls) == fetched


def test_subscriber_sees_loading_then_snapshot() -> None:
    adapter = FakeAdapter()
    subscriber = RecordingSubscriber()

    async def scenario():
        scheduler = build_scheduler(adapter, subscriber, debounce_delay=0.01)
        scheduler.on_interest("msft")
        await asyncio.sleep(0.05)
        await scheduler.drain()
        scheduler.close()

    asyncio.run(scenario())

    symbols = {symbol for symbol, _ in subscriber.updates}
    first, last = subscriber.updates[0][1], subscriber.updates[-1][1]
    assert symbols == {"MSFT"}
    assert isinstance(first, LoadingState) and first.is_loading is True
    assert isinstance(last, MarketDataSnapshot)


def test_terminal_error_is_published() -> None:
    adapter = FakeAdapter(failures=[NetworkError("down")] * 2)
    subscriber = RecordingSubscriber()

    async def scenario():
        scheduler = build_scheduler(adapter, subscriber, max_retries=1, debounce_delay=0.01)
        scheduler.on_interest("AAPL")
        await asyncio.sleep(0.05)
        await scheduler.drain()
        state = scheduler.state("AAPL")
        scheduler.close()
        return state

    state = asyncio.run(scenario())

    last = subscriber.updates[-1][1]
    assert isinstance(last, LoadingState)
    assert last.is_loading is False
    assert last.error_kind is ErrorKind.NETWORK
    assert state == last


def test_abandoned_fetch_completes_into_cache_without_notifying() -> None:
    adapter = FakeAdapter(delay=0.05)
    subscriber = RecordingSubscriber()

    async def scenario():
        scheduler = build_scheduler(adapter, subscriber, debounce_delay=0.01)
        scheduler.on_interest("AAPL")
        await asyncio.sleep(0.02)
        scheduler.on_interest("MSFT")
        await asyncio.sleep(0.1)
        await scheduler.drain()
        scheduler.close()
        return scheduler.service.cache.get("AAPL")

    cached = asyncio.run(scenario())

    assert cached is not None
    assert adapter.calls == ["AAPL", "MSFT"]
    assert subscriber.snapshots() == ["MSFT"]


def test_rate_limited_refreshes_are_paused() -> None:
    adapter = FakeAdapter()
    subscriber = RecordingSubscriber()

    async def scenario():
        scheduler = build_scheduler(
            adapter,
            subscriber,
            cache_ttl=0.001,
            max_requests=1,
            debounce_delay=0.01,
            refresh_interval=0.02,
        )
        scheduler.on_interest("AAPL")
        await asyncio.sleep(0.15)
        scheduler.close()
        await scheduler.drain()
        return scheduler.state("AAPL")

    state = asyncio.run(scenario())

    assert adapter.calls == ["AAPL"]
    assert state.error_kind is ErrorKind.RATE_LIMITED
    assert state.retry_after_ms > 0
    rate_limited = [
        update
        for _, update in subscriber.updates
        if isinstance(update, LoadingState) and update.error_kind is ErrorKind.RATE_LIMITED
    ]
    assert len(rate_limited) == 1


def test_renewed_interest_respects_rate_limit_cooldown() -> None:
    adapter = FakeAdapter()
    subscriber = RecordingSubscriber()

    async def scenario():
        scheduler = build_scheduler(
            adapter,
            subscriber,
            cache_ttl=0.001,
            max_requests=1,
            debounce_delay=0.01,
            refresh_interval=0.02,
        )
        scheduler.on_interest("AAPL")
        await asyncio.sleep(0.06)
        scheduler.on_interest("AAPL")
        await asyncio.sleep(0.05)
        scheduler.close()
        await scheduler.drain()

    asyncio.run(scenario())

    assert adapter.calls == ["AAPL"]
    rate_limited = [
        update
        for _, update in subscriber.updates
        if isinstance(update, LoadingState) and update.error_kind is ErrorKind.RATE_LIMITED
    ]
    assert len(rate_limited) == 1


def test_invalid_symbol_raises_immediately() -> None:
    async def scenario():
        scheduler = build_scheduler(FakeAdapter(), RecordingSubscriber())
        scheduler.on_interest("$$$")

    with pytest.raises(ValidationError):
        asyncio.run(scenario())


def test_closed_scheduler_rejects_interest() -> None:
    async def scenario():
        scheduler = build_scheduler(FakeAdapter(), RecordingSubscriber())
        scheduler.close()
        scheduler.on_interest("AAPL")

    with pytest.raises(RuntimeError):
        asyncio.run(scenario())
