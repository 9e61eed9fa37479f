from __future__ import annotations

from typing import Protocol

from marketsync.schemas.provider import MarketDataSnapshot


class MarketDataAdapter(Protocol):
    """Source of normalized snapshots. Any raised error is classified by the caller."""

    name: str

    async def fetch(self, symbol: str) -> MarketDataSnapshot:  # pragma: no cover - interface only
        ...
