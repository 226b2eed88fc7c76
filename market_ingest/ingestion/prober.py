from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from market_ingest.errors import IngestionError, NoSymbolResolved
from market_ingest.ingestion.providers import QuoteProvider, guarded_call
from market_ingest.ingestion.snapshot import utc_now
from market_ingest.ingestion.stepping import Continue, RequestPacer, fold_ordered
from market_ingest.ingestion.values import to_float
from market_ingest.models import CandidateSymbol, ResolvedQuote, StockRecord
from market_ingest.storage import MarketDataStore

logger = logging.getLogger(__name__)

Candidate = Union[str, CandidateSymbol]


def _ticker(candidate: Candidate) -> str:
    return candidate.ticker if isinstance(candidate, CandidateSymbol) else candidate


def resolve_quote(symbol: str, quote: Optional[Dict[str, Any]], as_of: datetime) -> Optional[ResolvedQuote]:
    """A quote resolves a candidate only when it carries a current price."""
    if not quote:
        return None
    price = to_float(quote.get("regularMarketPrice"))
    if price is None:
        return None
    return ResolvedQuote(
        symbol=symbol,
        display_name=quote.get("shortName") or quote.get("longName") or symbol,
        price=price,
        exchange=quote.get("exchangeName") or "Unknown",
        currency=quote.get("currency"),
        as_of=as_of,
    )


def select_preferred(resolved: Sequence[ResolvedQuote], markers: Sequence[str]) -> ResolvedQuote:
    """Pick the first resolved quote matching a canonical-index marker, else the first resolved.

    Raises:
        NoSymbolResolved: nothing resolved.
    """
    if not resolved:
        raise NoSymbolResolved("no probe candidate resolved to a priced quote")
    lowered = [m.lower() for m in markers if m]
    for quote in resolved:
        if any(marker in quote.symbol.lower() for marker in lowered):
            return quote
    return resolved[0]


class SymbolProber:
    """Probes candidate tickers one at a time under a request pacer."""

    def __init__(
        self,
        provider: QuoteProvider,
        store: MarketDataStore,
        request_timeout_seconds: float,
        pacer: RequestPacer,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.provider = provider
        self.store = store
        self.request_timeout_seconds = request_timeout_seconds
        self.pacer = pacer
        self.clock = clock
        self.notes: List[str] = []
        self.stored = 0

    async def probe(self, candidates: Sequence[Candidate]) -> List[ResolvedQuote]:
        """Return every candidate that resolves, in candidate order.

        Each resolution is persisted as a stock row before the next candidate
        is tried.
        """
        resolved: List[ResolvedQuote] = []
        self.stored = 0

        async def step(candidate: Candidate) -> Continue:
            symbol = _ticker(candidate)
            try:
                quote = await guarded_call(
                    self.provider.fetch_quote(symbol), self.request_timeout_seconds, symbol, "probe quote"
                )
            except IngestionError as exc:
                logger.warning("Probe of %s failed: %s", symbol, exc.message)
                return Continue(note=f"{symbol}: {exc.kind.value}: {exc.message}", failed=True)

            hit = resolve_quote(symbol, quote, self.clock())
            if hit is None:
                logger.info("Probe of %s: not resolvable", symbol)
                return Continue(note=f"{symbol}: not resolvable")

            resolved.append(hit)
            logger.info("Probe of %s: %s @ %s on %s", symbol, hit.display_name, hit.price, hit.exchange)
            try:
                self.store.upsert_stock(
                    StockRecord(
                        symbol=hit.symbol,
                        name=hit.display_name,
                        exchange=hit.exchange,
                        currency=hit.currency,
                        last_updated=hit.as_of,
                    )
                )
            except IngestionError as exc:
                logger.warning("Could not persist probed stock %s: %s", symbol, exc.message)
                return Continue(note=f"{symbol}: resolved but not stored ({exc.message})")
            self.stored += 1
            return Continue()

        outcome = await fold_ordered(candidates, step, self.pacer)
        self.notes = outcome.notes
        logger.info("Probe resolved %s of %s candidates", len(resolved), outcome.attempted)
        return resolved
