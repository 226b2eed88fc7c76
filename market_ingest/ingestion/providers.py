from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Dict, List, Optional, Protocol, TypeVar
from urllib.parse import quote

import httpx

from market_ingest.errors import IngestionError, TransportError
from market_ingest.ingestion.stepping import RequestBudget
from market_ingest.ingestion.values import first_present

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_HEADERS = {
    "User-Agent": "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Accept": "application/json",
}


class QuoteProvider(Protocol):
    """Provider contract consumed by the ingestion services."""

    name: str

    async def fetch_quote(self, symbol: str) -> Optional[Dict[str, Any]]: ...

    async def fetch_chart(self, symbol: str, start: datetime, end: datetime, interval: str = "1d") -> Any: ...


class YahooQuoteProvider:
    """Public Yahoo Finance v8 chart endpoint (no API key).

    Quotes are read from the chart ``meta`` block; ranged charts are
    flattened from the columnar ``timestamp``/``indicators`` arrays into a
    ``{"meta": ..., "quotes": [...]}`` payload.
    """

    name = "YahooFinance"

    def __init__(
        self,
        client: httpx.AsyncClient,
        base_url: str = "https://query1.finance.yahoo.com",
        budget: Optional[RequestBudget] = None,
    ) -> None:
        self.client = client
        self.base_url = base_url.rstrip("/")
        self.budget = budget

    async def _get_chart_result(self, symbol: str, params: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        if self.budget is not None and not self.budget.try_acquire():
            logger.warning("Request budget of %s/min spent, skipping %s", self.budget.limit, symbol)
            raise TransportError(f"request budget exhausted before fetching {symbol}", symbol=symbol)
        url = f"{self.base_url}/v8/finance/chart/{quote(symbol, safe='')}"
        try:
            resp = await self.client.get(url, params=params, headers=DEFAULT_HEADERS)
            if resp.status_code == 404:
                logger.info("Provider does not know %s", symbol)
                return None
            resp.raise_for_status()
            payload = resp.json()
        except httpx.TimeoutException as exc:
            raise TransportError(f"timeout fetching {symbol}: {exc}", symbol=symbol) from exc
        except httpx.HTTPError as exc:
            raise TransportError(f"HTTP error fetching {symbol}: {exc}", symbol=symbol) from exc
        except ValueError as exc:
            raise TransportError(f"invalid JSON for {symbol}: {exc}", symbol=symbol) from exc

        chart = payload.get("chart") if isinstance(payload, dict) else None
        results = chart.get("result") if isinstance(chart, dict) else None
        if not results:
            error = chart.get("error") if isinstance(chart, dict) else None
            logger.info("Empty chart result for %s: %s", symbol, error)
            return None
        return results[0]

    async def fetch_quote(self, symbol: str) -> Optional[Dict[str, Any]]:
        result = await self._get_chart_result(symbol, {"range": "1d", "interval": "1d"})
        if result is None:
            return None

        meta = result.get("meta") or {}
        return {
            "symbol": meta.get("symbol", symbol),
            "regularMarketPrice": meta.get("regularMarketPrice"),
            "regularMarketPreviousClose": first_present(
                meta, "regularMarketPreviousClose", "previousClose", "chartPreviousClose"
            ),
            "regularMarketVolume": meta.get("regularMarketVolume"),
            "longName": meta.get("longName"),
            "shortName": meta.get("shortName"),
            "exchangeName": first_present(meta, "fullExchangeName", "exchangeName"),
            "currency": meta.get("currency"),
        }

    async def fetch_chart(self, symbol: str, start: datetime, end: datetime, interval: str = "1d") -> Any:
        params = {
            "period1": int(start.timestamp()),
            "period2": int(end.timestamp()),
            "interval": interval,
            "events": "history",
        }
        result = await self._get_chart_result(symbol, params)
        if result is None:
            return {"meta": {}, "quotes": []}

        timestamps = result.get("timestamp") or []
        indicators = result.get("indicators") or {}
        columns = (indicators.get("quote") or [{}])[0] or {}
        adjclose = ((indicators.get("adjclose") or [{}])[0] or {}).get("adjclose") or []

        def column(name: str) -> List[Any]:
            return columns.get(name) or []

        def at(values: List[Any], index: int) -> Any:
            return values[index] if index < len(values) else None

        quotes = [
            {
                "date": datetime.fromtimestamp(ts, tz=timezone.utc),
                "open": at(column("open"), i),
                "high": at(column("high"), i),
                "low": at(column("low"), i),
                "close": at(column("close"), i),
                "volume": at(column("volume"), i),
                "adjclose": at(adjclose, i),
            }
            for i, ts in enumerate(timestamps)
        ]
        logger.info("Fetched %s chart points for %s from %s", len(quotes), symbol, self.name)
        return {"meta": result.get("meta") or {}, "quotes": quotes}


async def guarded_call(call: Awaitable[T], timeout: float, symbol: str, what: str) -> T:
    """Await a provider call under a timeout.

    Timeouts and unexpected provider exceptions surface as ``TransportError``.
    """
    try:
        return await asyncio.wait_for(call, timeout=timeout)
    except asyncio.TimeoutError as exc:
        raise TransportError(f"{what} for {symbol} timed out after {timeout}s", symbol=symbol) from exc
    except IngestionError:
        raise
    except Exception as exc:  # noqa: BLE001
        logger.exception("Unexpected provider failure during %s for %s", what, symbol)
        raise TransportError(f"{what} for {symbol} failed: {exc}", symbol=symbol) from exc
