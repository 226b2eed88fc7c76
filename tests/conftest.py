from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

import pytest

from market_ingest.config import Settings
from market_ingest.errors import TransportError
from market_ingest.storage import ParquetMarketStore
from market_ingest.sql_storage import SqlMarketStore

FIXED_NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


def fixed_clock() -> datetime:
    return FIXED_NOW


def make_points(count: int, days_back_start: int, close: float = 100.0) -> List[Dict[str, Any]]:
    """Daily provider points, oldest first, starting ``days_back_start`` days before FIXED_NOW."""
    return [
        {
            "date": FIXED_NOW - timedelta(days=days_back_start - i),
            "open": close - 1,
            "high": close + 2,
            "low": close - 2,
            "close": close + i,
            "volume": 1000 + i,
            "adjclose": close + i,
        }
        for i in range(count)
    ]


def make_quote(price: Optional[float], previous_close: Optional[float], **extra: Any) -> Dict[str, Any]:
    quote = {
        "regularMarketPrice": price,
        "regularMarketPreviousClose": previous_close,
        "regularMarketVolume": 123456,
        "longName": None,
        "shortName": None,
        "exchangeName": "Cairo",
        "currency": "EGP",
    }
    quote.update(extra)
    return quote


class FakeProvider:
    """In-memory provider.

    ``quotes`` maps symbol to a quote dict, ``None`` or an exception to raise.
    ``charts`` maps window length in days to a payload or an exception.
    """

    name = "Fake"

    def __init__(
        self,
        quotes: Optional[Dict[str, Any]] = None,
        charts: Optional[Dict[int, Any]] = None,
        delay: float = 0.0,
    ) -> None:
        self.quotes = quotes or {}
        self.charts = charts or {}
        self.delay = delay
        self.quote_calls: List[str] = []
        self.chart_calls: List[Tuple[str, int]] = []

    async def fetch_quote(self, symbol: str) -> Optional[Dict[str, Any]]:
        self.quote_calls.append(symbol)
        if self.delay:
            await asyncio.sleep(self.delay)
        result = self.quotes.get(symbol)
        if isinstance(result, Exception):
            raise result
        return result

    async def fetch_chart(self, symbol: str, start: datetime, end: datetime, interval: str = "1d") -> Any:
        window_days = round((end - start).total_seconds() / 86400)
        self.chart_calls.append((symbol, window_days))
        if self.delay:
            await asyncio.sleep(self.delay)
        result = self.charts.get(window_days, {"quotes": []})
        if isinstance(result, Exception):
            raise result
        return result


class ManualClock:
    """Monotonic clock whose sleeps advance time instead of blocking."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def transport_error(symbol: str = "X") -> TransportError:
    return TransportError("connection reset by peer", symbol=symbol)


@pytest.fixture
def parquet_store(tmp_path):
    return ParquetMarketStore(tmp_path / "data")


@pytest.fixture
def sql_store(tmp_path):
    return SqlMarketStore(f"sqlite:///{tmp_path / 'market.db'}")


@pytest.fixture(params=["parquet", "sql"])
def store(request, tmp_path):
    if request.param == "parquet":
        return ParquetMarketStore(tmp_path / "data")
    return SqlMarketStore(f"sqlite:///{tmp_path / 'market.db'}")


@pytest.fixture
def test_settings(tmp_path):
    return Settings(
        data_dir=tmp_path / "data",
        database_url=None,
        request_timeout_seconds=5.0,
        probe_delay_seconds=0.0,
        probe_error_delay_seconds=0.0,
        refresh_delay_seconds=0.0,
        backfill_windows_raw="30,90",
        canonical_index_markers_raw="CASE30,EGX30",
        default_symbol="^EGX30CAPPED.CA",
    )
