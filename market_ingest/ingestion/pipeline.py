from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, Dict, Optional, Sequence

import httpx

from market_ingest.config import Settings, settings
from market_ingest.errors import NoSymbolResolved
from market_ingest.ingestion.backfill import DEFAULT_WINDOWS_DAYS, HistoricalBackfiller
from market_ingest.ingestion.prober import Candidate, SymbolProber, select_preferred
from market_ingest.ingestion.providers import QuoteProvider, YahooQuoteProvider
from market_ingest.ingestion.snapshot import SnapshotUpdater
from market_ingest.ingestion.stepping import RequestBudget, RequestPacer
from market_ingest.models import (
    BackfillMode,
    BackfillSummary,
    BatchSummary,
    IngestionFailure,
    ProbeSummary,
    SnapshotSummary,
    SymbolProfile,
)
from market_ingest.storage import MarketDataStore, build_store

logger = logging.getLogger(__name__)

ProviderFactory = Callable[[httpx.AsyncClient], QuoteProvider]


class DataIngestionPipeline:
    """Entry points for probing, snapshot updates and historical backfill.

    Each run opens its own HTTP client and provider. The provider request
    budget and the per-symbol backfill locks are shared by every run of one
    pipeline.
    """

    def __init__(
        self,
        store: MarketDataStore,
        config: Settings,
        provider_factory: Optional[ProviderFactory] = None,
    ) -> None:
        self.store = store
        self.config = config
        self.budget = RequestBudget(config.provider_rate_limit_per_minute)
        self._symbol_locks: Dict[str, asyncio.Lock] = {}
        self.provider_factory = provider_factory or (
            lambda client: YahooQuoteProvider(client, base_url=config.quote_api_base_url, budget=self.budget)
        )

    @asynccontextmanager
    async def _provider(self) -> AsyncIterator[QuoteProvider]:
        timeout = httpx.Timeout(self.config.request_timeout_seconds)
        async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as client:
            yield self.provider_factory(client)

    async def run_snapshot(self, symbol: str, profile: Optional[SymbolProfile] = None) -> SnapshotSummary:
        async with self._provider() as provider:
            updater = SnapshotUpdater(provider, self.store, self.config.request_timeout_seconds)
            return await updater.update_snapshot(symbol, profile)

    async def run_refresh_active(self) -> BatchSummary:
        pacer = RequestPacer(self.config.refresh_delay_seconds)
        async with self._provider() as provider:
            updater = SnapshotUpdater(provider, self.store, self.config.request_timeout_seconds)
            return await updater.refresh_active(pacer)

    def _backfiller(self, provider: QuoteProvider) -> HistoricalBackfiller:
        return HistoricalBackfiller(
            provider,
            self.store,
            self.config.request_timeout_seconds,
            windows=self.config.backfill_windows or DEFAULT_WINDOWS_DAYS,
            locks=self._symbol_locks,
        )

    async def run_backfill(self, symbol: str, full: bool = False) -> BackfillSummary:
        mode = BackfillMode.FULL if full else BackfillMode.WINDOW
        async with self._provider() as provider:
            return await self._backfiller(provider).backfill(symbol, mode)

    async def run_backfill_many(self, symbols: Sequence[str], full: bool = False) -> BatchSummary:
        mode = BackfillMode.FULL if full else BackfillMode.WINDOW
        async with self._provider() as provider:
            return await self._backfiller(provider).backfill_many(
                symbols, mode, concurrency=self.config.backfill_concurrency
            )

    async def run_probe(self, candidates: Sequence[Candidate]) -> ProbeSummary:
        """Probe candidates in order and select the preferred symbol.

        When nothing resolves the configured default symbol is selected and
        the summary records ``NoSymbolResolved``.
        """
        pacer = RequestPacer(self.config.probe_delay_seconds, self.config.probe_error_delay_seconds)
        async with self._provider() as provider:
            prober = SymbolProber(provider, self.store, self.config.request_timeout_seconds, pacer)
            resolved = await prober.probe(candidates)

        summary = ProbeSummary(
            symbols=[c if isinstance(c, str) else c.ticker for c in candidates],
            resolved=resolved,
            rows_affected=prober.stored,
            errors=prober.notes,
        )
        try:
            selected = select_preferred(resolved, self.config.canonical_index_markers)
        except NoSymbolResolved as exc:
            logger.warning("%s; falling back to %s", exc.message, self.config.default_symbol)
            summary.failure = IngestionFailure.from_error(exc)
            summary.selected_symbol = self.config.default_symbol
            summary.used_default = True
            summary.message = (
                f"none of {len(summary.symbols)} candidates resolved; using default {self.config.default_symbol}"
            )
            return summary

        summary.selected_symbol = selected.symbol
        summary.message = (
            f"resolved {len(resolved)}/{len(summary.symbols)} candidates; selected {selected.symbol} "
            f"({selected.display_name})"
        )
        logger.info("Probe summary: %s", summary.message)
        return summary


def build_pipeline(config: Settings = settings) -> DataIngestionPipeline:
    """Create a pipeline with default settings and store."""
    store = build_store(config)
    return DataIngestionPipeline(store=store, config=config)
