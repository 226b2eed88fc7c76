from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from market_ingest.errors import FailureKind, IncompleteQuoteData, IngestionError
from market_ingest.ingestion.providers import QuoteProvider, guarded_call
from market_ingest.ingestion.stepping import Continue, RequestPacer, fold_ordered
from market_ingest.ingestion.values import to_float, to_int
from market_ingest.models import (
    BatchSummary,
    IngestionFailure,
    MarketSnapshot,
    SnapshotSummary,
    SymbolProfile,
)
from market_ingest.storage import MarketDataStore

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def build_snapshot(
    symbol: str,
    quote: Optional[Dict[str, Any]],
    fetched_at: datetime,
    profile: Optional[SymbolProfile] = None,
) -> MarketSnapshot:
    """Derive a snapshot row from a provider quote.

    Raises:
        IncompleteQuoteData: price or previous close missing, or previous close is zero.
    """
    if not quote:
        raise IncompleteQuoteData(f"no quote returned for {symbol}", symbol=symbol)

    current_price = to_float(quote.get("regularMarketPrice"))
    previous_close = to_float(quote.get("regularMarketPreviousClose"))
    if current_price is None or previous_close is None:
        raise IncompleteQuoteData(
            f"quote for {symbol} lacks regularMarketPrice or regularMarketPreviousClose", symbol=symbol
        )
    if previous_close == 0:
        raise IncompleteQuoteData(f"quote for {symbol} has a zero previous close", symbol=symbol)

    price_change = current_price - previous_close
    profile = profile or SymbolProfile()
    return MarketSnapshot(
        symbol=symbol,
        company_name=quote.get("longName") or quote.get("shortName") or symbol,
        company_name_localized=profile.company_name_localized,
        current_price=current_price,
        previous_close=previous_close,
        price_change=price_change,
        price_change_percent=price_change / previous_close * 100,
        volume=to_int(quote.get("regularMarketVolume")),
        sector=profile.sector,
        sector_localized=profile.sector_localized,
        last_updated=fetched_at,
        is_active=True,
    )


class SnapshotUpdater:
    """Fetches one current quote per symbol and upserts the latest quote cache."""

    def __init__(
        self,
        provider: QuoteProvider,
        store: MarketDataStore,
        request_timeout_seconds: float,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.provider = provider
        self.store = store
        self.request_timeout_seconds = request_timeout_seconds
        self.clock = clock

    async def update_snapshot(self, symbol: str, profile: Optional[SymbolProfile] = None) -> SnapshotSummary:
        try:
            quote = await guarded_call(
                self.provider.fetch_quote(symbol), self.request_timeout_seconds, symbol, "quote request"
            )
            snapshot = build_snapshot(symbol, quote, self.clock(), profile)
            self.store.upsert_snapshot(snapshot)
        except IngestionError as exc:
            logger.warning("Snapshot update failed for %s: %s", symbol, exc.message)
            return SnapshotSummary(
                symbols=[symbol],
                failure=IngestionFailure.from_error(exc),
                message=f"{symbol}: snapshot not updated ({exc.kind.value}: {exc.message})",
            )

        logger.info(
            "Snapshot %s: %.2f (%+.2f, %+.2f%%)",
            symbol,
            snapshot.current_price,
            snapshot.price_change,
            snapshot.price_change_percent,
        )
        return SnapshotSummary(
            symbols=[symbol],
            rows_affected=1,
            snapshot=snapshot,
            message=f"{symbol}: {snapshot.current_price:.2f} ({snapshot.price_change_percent:+.2f}%)",
        )

    async def refresh_active(self, pacer: Optional[RequestPacer] = None) -> BatchSummary:
        """Refresh every active snapshot in sequence, keeping each row's profile."""
        active = self.store.list_snapshots(active_only=True)
        batch = BatchSummary(operation="snapshot-refresh", symbols=[s.symbol for s in active])

        async def step(current: MarketSnapshot) -> Continue:
            summary = await self.update_snapshot(current.symbol, profile=current.profile)
            batch.results.append(summary)
            if summary.ok:
                batch.succeeded.append(current.symbol)
                batch.rows_affected += summary.rows_affected
                return Continue()
            batch.failed.append(current.symbol)
            return Continue(note=summary.message, failed=summary.failure.kind == FailureKind.TRANSPORT)

        outcome = await fold_ordered(active, step, pacer)
        batch.errors.extend(outcome.notes)
        batch.message = f"refreshed {len(batch.succeeded)}/{len(active)} active snapshots"
        logger.info("Active snapshot refresh: %s", batch.message)
        return batch
