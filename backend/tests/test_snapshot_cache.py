import asyncio

import pytest

from marketsync.cache import SnapshotCache
from marketsync.schemas.provider import MarketDataSnapshot


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def build_snapshot(symbol: str = "AAPL", price: float = 190.5) -> MarketDataSnapshot:
    return MarketDataSnapshot(symbol=symbol, provider="test", current_price=price)


def test_cache_hits_just_before_ttl() -> None:
    clock = FakeClock()
    cache = SnapshotCache(ttl_seconds=60, clock=clock)
    snapshot = build_snapshot()
    cache.put("AAPL", snapshot)

    clock.now += 60 - 0.001
    assert cache.get("AAPL") is snapshot
    assert len(cache) == 1


def test_cache_misses_and_evicts_after_ttl() -> None:
    clock = FakeClock()
    cache = SnapshotCache(ttl_seconds=60, clock=clock)
    cache.put("AAPL", build_snapshot())

    clock.now += 60 + 0.001
    assert cache.get("AAPL") is None
    assert len(cache) == 0


def test_put_overwrites_existing_entry() -> None:
    clock = FakeClock()
    cache = SnapshotCache(ttl_seconds=60, clock=clock)
    cache.put("AAPL", build_snapshot(price=1.0))
    clock.now += 50
    newer = build_snapshot(price=2.0)
    cache.put("AAPL", newer)

    clock.now += 50
    assert cache.get("AAPL") is newer


def test_put_accepts_per_entry_ttl() -> None:
    clock = FakeClock()
    cache = SnapshotCache(ttl_seconds=60, clock=clock)
    cache.put("AAPL", build_snapshot(), ttl=5)

    clock.now += 6
    assert cache.get("AAPL") is None


def test_sweep_removes_entries_older_than_twice_ttl() -> None:
    clock = FakeClock()
    cache = SnapshotCache(ttl_seconds=60, clock=clock)
    cache.put("OLD", build_snapshot("OLD"))
    clock.now += 90
    cache.put("NEW", build_snapshot("NEW"))
    clock.now += 40

    removed = cache.sweep()

    assert removed == 1
    assert cache.stats() == {"size": 1, "keys": ["NEW"]}


def test_sweep_keeps_stale_entries_younger_than_twice_ttl() -> None:
    clock = FakeClock()
    cache = SnapshotCache(ttl_seconds=60, clock=clock)
    cache.put("AAPL", build_snapshot())
    clock.now += 100

    assert cache.sweep() == 0
    assert len(cache) == 1


def test_invalidate_normalizes_symbol() -> None:
    cache = SnapshotCache(ttl_seconds=60, clock=FakeClock())
    cache.put("BRK.B", build_snapshot("BRK.B"))

    assert cache.invalidate(" brk.b ") is True
    assert cache.invalidate("BRK.B") is False
    assert cache.get("BRK.B") is None


def test_clear_empties_cache() -> None:
    cache = SnapshotCache(ttl_seconds=60, clock=FakeClock())
    cache.put("AAPL", build_snapshot("AAPL"))
    cache.put("MSFT", build_snapshot("MSFT"))

    cache.clear()

    assert cache.stats() == {"size": 0, "keys": []}


def test_rejects_non_positive_ttl() -> None:
    with pytest.raises(ValueError):
        SnapshotCache(ttl_seconds=0)


def test_background_sweeper_runs_every_ttl() -> None:
    async def scenario() -> int:
        cache = SnapshotCache(ttl_seconds=0.02)
        cache.put("AAPL", build_snapshot())
        cache.start()
        await asyncio.sleep(0.15)
        size = len(cache)
        await cache.close()
        return size

    assert asyncio.run(scenario()) == 0
