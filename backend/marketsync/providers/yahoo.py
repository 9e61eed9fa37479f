from __future__ import annotations

import asyncio
import json
import logging
import socket
from urllib.error import HTTPError, URLError
from urllib.parse import quote, urlencode
from urllib.request import Request, urlopen

from marketsync.config.settings import ProviderSettings, settings
from marketsync.errors import UpstreamAPIError
from marketsync.schemas.provider import AnalystRatings, KeyMetrics, MarketDataSnapshot

logger = logging.getLogger(__name__)

_QUOTE_MODULES = "defaultKeyStatistics,financialData,recommendationTrend,calendarEvents"


def _raw(value):
    # quoteSummary wraps numbers as {"raw": 1.23, "fmt": "1.23"}
    if isinstance(value, dict):
        value = value.get("raw")
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    return None


class YahooFinanceAdapter:
    """Chart + quoteSummary adapter. Blocking I/O runs in a worker thread."""

    name = "yahoo"

    def __init__(self, provider_settings: ProviderSettings | None = None, timeout: float = 10.0) -> None:
        self._settings = provider_settings or settings.providers
        self._timeout = timeout

    def _get_json(self, url: str) -> object:
        request = Request(
            url,
            headers={
                "User-Agent": self._settings.user_agent,
                "Accept": "application/json, text/plain, */*",
                "Accept-Language": "en-US,en;q=0.9",
                "Referer": "https://finance.yahoo.com/",
            },
        )
        with urlopen(request, timeout=self._timeout) as response:
            body = response.read().decode("utf-8")
        return json.loads(body)

    def _chart_url(self, symbol: str) -> str:
        base_url = self._settings.yahoo_chart_url.rstrip("/")
        return f"{base_url}/{quote(symbol)}?{urlencode({'interval': '1h', 'range': '1d'})}"

    def _quote_url(self, symbol: str) -> str:
        base_url = self._settings.yahoo_quote_url.rstrip("/")
        return f"{base_url}/{quote(symbol)}?{urlencode({'modules': _QUOTE_MODULES})}"

    def _fetch_quote_summary(self, symbol: str) -> dict:
        try:
            payload = self._get_json(self._quote_url(symbol))
        except (HTTPError, URLError, json.JSONDecodeError, TimeoutError, socket.timeout) as exc:
            # Ratings and metrics are optional; the price is what matters.
            logger.warning("Failed to fetch quote summary for %s: %s", symbol, exc)
            return {}
        if not isinstance(payload, dict):
            return {}
        results = (payload.get("quoteSummary") or {}).get("result") or []
        if not results or not isinstance(results[0], dict):
            return {}
        return results[0]

    def fetch_sync(self, symbol: str) -> MarketDataSnapshot:
        payload = self._get_json(self._chart_url(symbol))
        if not isinstance(payload, dict):
            raise UpstreamAPIError(f"Unexpected chart payload for {symbol}")
        results = (payload.get("chart") or {}).get("result") or []
        if not results:
            raise UpstreamAPIError(f"No data found for ticker: {symbol}")

        result = results[0]
        meta = result.get("meta") or {}
        price = _raw(meta.get("regularMarketPrice"))
        if price is None:
            raise UpstreamAPIError(f"No price found for ticker: {symbol}")

        quotes = (result.get("indicators") or {}).get("quote") or [{}]
        closes = quotes[0].get("close") or []
        history = tuple(float(close) for close in closes if _raw(close) is not None)

        summary = self._fetch_quote_summary(symbol)
        stats = summary.get("defaultKeyStatistics") or {}
        financial = summary.get("financialData") or {}
        calendar = summary.get("calendarEvents") or {}
        earnings_dates = (calendar.get("earnings") or {}).get("earningsDate") or []
        next_earnings = None
        if earnings_dates and isinstance(earnings_dates[0], dict):
            next_earnings = earnings_dates[0].get("fmt")

        return MarketDataSnapshot(
            symbol=symbol,
            provider=self.name,
            current_price=price,
            currency=meta.get("currency"),
            previous_close=_raw(meta.get("chartPreviousClose") or meta.get("previousClose")),
            price_history=history,
            analyst_ratings=AnalystRatings(
                recommendation=financial.get("recommendationKey") or "N/A",
                target_low=_raw(financial.get("targetLowPrice")),
                target_average=_raw(financial.get("targetMeanPrice")),
                target_high=_raw(financial.get("targetHighPrice")),
            ),
            key_metrics=KeyMetrics(
                beta=_raw(stats.get("beta")),
                fifty_two_week_high=_raw(meta.get("fiftyTwoWeekHigh") or financial.get("fiftyTwoWeekHigh")),
                fifty_two_week_low=_raw(meta.get("fiftyTwoWeekLow") or financial.get("fiftyTwoWeekLow")),
            ),
            next_earnings_date=next_earnings,
        )

    async def fetch(self, symbol: str) -> MarketDataSnapshot:
        return await asyncio.to_thread(self.fetch_sync, symbol)
