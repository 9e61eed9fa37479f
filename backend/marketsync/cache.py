from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable

from marketsync.schemas.provider import MarketDataSnapshot

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CacheEntry:
    snapshot: MarketDataSnapshot
    timestamp: float
    ttl: float


class SnapshotCache:
    """Memory-resident snapshot cache keyed by normalized symbol."""

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive.")
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._sweeper: asyncio.Task | None = None

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, symbol: str) -> MarketDataSnapshot | None:
        entry = self._entries.get(symbol)
        if entry is None:
            return None
        if self._clock() - entry.timestamp < entry.ttl:
            return entry.snapshot
        del self._entries[symbol]
        return None

    def put(self, symbol: str, snapshot: MarketDataSnapshot, ttl: float | None = None) -> None:
        self._entries[symbol] = CacheEntry(
            snapshot=snapshot,
            timestamp=self._clock(),
            ttl=self.ttl_seconds if ttl is None else ttl,
        )

    def invalidate(self, symbol: str) -> bool:
        return self._entries.pop(symbol.strip().upper(), None) is not None

    def clear(self) -> None:
        self._entries.clear()

    def sweep(self) -> int:
        now = self._clock()
        expired = [
            symbol
            for symbol, entry in self._entries.items()
            if now - entry.timestamp > 2 * entry.ttl
        ]
        for symbol in expired:
            del self._entries[symbol]
        if expired:
            logger.debug("Swept %d cache entries: %s", len(expired), ", ".join(expired))
        return len(expired)

    def stats(self) -> dict:
        return {"size": len(self._entries), "keys": sorted(self._entries)}

    async def _sweep_forever(self) -> None:
        while True:
            await asyncio.sleep(self.ttl_seconds)
            self.sweep()

    def start(self) -> None:
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.get_running_loop().create_task(self._sweep_forever())

    async def close(self) -> None:
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        try:
            await self._sweeper
        except asyncio.CancelledError:
            pass
        self._sweeper = None
