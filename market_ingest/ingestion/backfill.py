from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from market_ingest.errors import IngestionError, NoUsableHistoricalData, StoreError
from market_ingest.ingestion.normalizer import normalize
from market_ingest.ingestion.providers import QuoteProvider, guarded_call
from market_ingest.ingestion.snapshot import utc_now
from market_ingest.ingestion.stepping import Continue, Stop, StepResult, fold_ordered
from market_ingest.ingestion.values import parse_point_date, to_float, to_int
from market_ingest.models import (
    BackfillMode,
    BackfillSummary,
    BatchSummary,
    HistoricalRecord,
    IngestionFailure,
)
from market_ingest.storage import MarketDataStore

logger = logging.getLogger(__name__)

DEFAULT_WINDOWS_DAYS = (30, 90, 180, 365)


def point_to_record(symbol: str, point: Any) -> Optional[HistoricalRecord]:
    """Map one provider point to a record; None when it has no close or no date."""
    if not isinstance(point, Mapping):
        return None
    close = to_float(point.get("close"))
    if close is None:
        return None
    date_time = parse_point_date(point.get("date"))
    if date_time is None:
        logger.warning("Dropping %s point with unreadable date %r", symbol, point.get("date"))
        return None
    return HistoricalRecord(
        symbol=symbol,
        date_time=date_time,
        open_price=to_float(point.get("open")),
        high_price=to_float(point.get("high")),
        low_price=to_float(point.get("low")),
        close_price=close,
        volume=to_int(point.get("volume")),
        adjusted_close=to_float(point.get("adjclose")),
    )


def points_to_records(symbol: str, points: Iterable[Any]) -> List[HistoricalRecord]:
    records = [point_to_record(symbol, point) for point in points]
    return [r for r in records if r is not None]


@dataclass
class WindowResult:
    window_days: int
    count: int


class HistoricalBackfiller:
    """Fills the historical store for a symbol from the shortest usable window."""

    def __init__(
        self,
        provider: QuoteProvider,
        store: MarketDataStore,
        request_timeout_seconds: float,
        windows: Sequence[int] = DEFAULT_WINDOWS_DAYS,
        interval: str = "1d",
        clock: Callable[[], datetime] = utc_now,
        locks: Optional[Dict[str, asyncio.Lock]] = None,
    ) -> None:
        self.provider = provider
        self.store = store
        self.request_timeout_seconds = request_timeout_seconds
        self.windows = tuple(sorted(windows))
        self.interval = interval
        self.clock = clock
        # Keyed by symbol; the pipeline shares one mapping across backfillers.
        self._symbol_locks: Dict[str, asyncio.Lock] = locks if locks is not None else {}

    def _lock_for(self, symbol: str) -> asyncio.Lock:
        if symbol not in self._symbol_locks:
            self._symbol_locks[symbol] = asyncio.Lock()
        return self._symbol_locks[symbol]

    async def _try_window(self, symbol: str, window_days: int, mode: BackfillMode) -> StepResult:
        end = self.clock()
        start = end - timedelta(days=window_days)
        try:
            payload = await guarded_call(
                self.provider.fetch_chart(symbol, start, end, self.interval),
                self.request_timeout_seconds,
                symbol,
                f"{window_days}d chart request",
            )
        except IngestionError as exc:
            note = f"{symbol} {window_days}d: {exc.kind.value}: {exc.message}"
            logger.warning("Window failed, trying next: %s", note)
            return Continue(note=note, failed=True)

        points = normalize(payload)
        records = points_to_records(symbol, points)
        if not records:
            note = f"{symbol} {window_days}d: no usable records in {len(points)} points"
            logger.warning("Window empty, trying next: %s", note)
            return Continue(note=note)

        since = None if mode is BackfillMode.FULL else start
        # StoreError propagates: a failed commit ends this operation.
        count = self.store.replace_history(symbol, records, since)
        logger.info(
            "Stored %s records for %s from the %sd window (%s points, %s dropped)",
            count,
            symbol,
            window_days,
            len(points),
            len(points) - len(records),
        )
        return Stop(WindowResult(window_days=window_days, count=count))

    async def backfill(
        self,
        symbol: str,
        mode: BackfillMode = BackfillMode.WINDOW,
        windows: Optional[Sequence[int]] = None,
    ) -> BackfillSummary:
        """Try each lookback window shortest-first and keep the first that yields records.

        ``BackfillMode.WINDOW`` replaces stored rows inside the winning window;
        ``BackfillMode.FULL`` replaces every stored row for the symbol.
        """
        ordered = tuple(sorted(windows)) if windows else self.windows
        summary = BackfillSummary(symbols=[symbol], mode=mode)

        async with self._lock_for(symbol):
            try:
                outcome = await fold_ordered(ordered, lambda days: self._try_window(symbol, days, mode))
            except StoreError as exc:
                logger.error("Backfill store write failed for %s: %s", symbol, exc.message)
                summary.failure = IngestionFailure.from_error(exc)
                summary.message = f"{symbol}: store write failed, nothing committed for the failing window"
                return summary

        summary.windows_attempted = outcome.attempted
        summary.errors = outcome.notes
        if not outcome.stopped:
            exc = NoUsableHistoricalData(
                f"no usable historical data for {symbol} in windows {list(ordered)}", symbol=symbol
            )
            logger.warning("%s", exc.message)
            summary.failure = IngestionFailure.from_error(exc)
            summary.message = f"{symbol}: {exc.message}; store left untouched"
            return summary

        result: WindowResult = outcome.value
        summary.rows_affected = result.count
        summary.window_days = result.window_days
        summary.stored_total = self.store.count_history(symbol)
        latest = self.store.latest_history(symbol)
        summary.latest_date_time = latest.date_time if latest else None
        summary.message = (
            f"{symbol}: stored {result.count} records from the {result.window_days}d window "
            f"({summary.stored_total} total)"
        )
        return summary

    async def backfill_many(
        self,
        symbols: Sequence[str],
        mode: BackfillMode = BackfillMode.WINDOW,
        concurrency: int = 5,
    ) -> BatchSummary:
        """Backfill distinct symbols concurrently, at most ``concurrency`` at a time."""
        unique = list(dict.fromkeys(symbols))
        semaphore = asyncio.Semaphore(max(1, concurrency))

        async def run(symbol: str) -> BackfillSummary:
            async with semaphore:
                return await self.backfill(symbol, mode)

        results = await asyncio.gather(*(run(symbol) for symbol in unique))

        batch = BatchSummary(operation="backfill", symbols=unique, results=list(results))
        for result in results:
            if result.ok:
                batch.succeeded.append(result.symbols[0])
                batch.rows_affected += result.rows_affected
            else:
                batch.failed.append(result.symbols[0])
                batch.errors.append(result.message)
        batch.message = (
            f"backfilled {len(batch.succeeded)}/{len(unique)} symbols, {batch.rows_affected} records"
        )
        logger.info("Backfill batch: %s", batch.message)
        return batch
