from __future__ import annotations

import datetime
import re

from pydantic import BaseModel, ConfigDict, Field

from marketsync.errors import ValidationError

_SYMBOL_RE = re.compile(r"^[A-Z0-9.]{1,10}$")


def normalize_symbol(raw: str) -> str:
    if not isinstance(raw, str) or not raw.strip():
        raise ValidationError("Ticker is required")
    cleaned = raw.strip().upper()
    if not _SYMBOL_RE.match(cleaned):
        raise ValidationError(f"Invalid ticker format: {raw!r}")
    return cleaned


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.UTC)


class AnalystRatings(BaseModel):
    model_config = ConfigDict(frozen=True)

    recommendation: str = "N/A"
    target_low: float | None = None
    target_average: float | None = None
    target_high: float | None = None


class KeyMetrics(BaseModel):
    model_config = ConfigDict(frozen=True)

    beta: float | None = None
    fifty_two_week_high: float | None = None
    fifty_two_week_low: float | None = None


class MarketDataSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    symbol: str
    provider: str
    current_price: float
    currency: str | None = None
    previous_close: float | None = None
    price_history: tuple[float, ...] = ()
    analyst_ratings: AnalystRatings = Field(default_factory=AnalystRatings)
    key_metrics: KeyMetrics = Field(default_factory=KeyMetrics)
    next_earnings_date: str | None = None
    fetched_at: datetime.datetime = Field(default_factory=_utcnow)
