from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, SerializeAsAny

from market_ingest.errors import FailureKind, IngestionError


class CandidateSymbol(BaseModel):
    """Ticker to probe, with human-readable aliasing hints."""

    ticker: str = Field(..., description="Ticker string exactly as sent to the provider.")
    hints: List[str] = Field(default_factory=list, description="Aliases such as the index's common names.")


class ResolvedQuote(BaseModel):
    """A candidate that the provider answered with a priced quote."""

    model_config = ConfigDict(frozen=True)

    symbol: str
    display_name: str
    price: float
    exchange: str
    currency: Optional[str] = None
    as_of: datetime


class StockRecord(BaseModel):
    """Minimal stock row written as soon as a probe candidate resolves."""

    symbol: str
    name: str
    exchange: str
    currency: Optional[str] = None
    last_updated: datetime


class SymbolProfile(BaseModel):
    """Descriptive metadata the provider does not carry."""

    company_name_localized: Optional[str] = None
    sector: Optional[str] = None
    sector_localized: Optional[str] = None


class MarketSnapshot(BaseModel):
    """Latest known quote state for a symbol (one row per symbol)."""

    symbol: str = Field(..., description="Unique key.")
    company_name: str
    company_name_localized: Optional[str] = None
    current_price: float
    previous_close: float
    price_change: float
    price_change_percent: float
    volume: Optional[int] = None
    sector: Optional[str] = None
    sector_localized: Optional[str] = None
    last_updated: datetime
    is_active: bool = True

    @property
    def profile(self) -> SymbolProfile:
        return SymbolProfile(
            company_name_localized=self.company_name_localized,
            sector=self.sector,
            sector_localized=self.sector_localized,
        )


class HistoricalRecord(BaseModel):
    """One stored time-series point, unique per (symbol, date_time)."""

    symbol: str
    date_time: datetime
    open_price: Optional[float] = None
    high_price: Optional[float] = None
    low_price: Optional[float] = None
    close_price: float = Field(..., description="Required; points without a close are never stored.")
    volume: Optional[int] = None
    adjusted_close: Optional[float] = None


class SymbolCount(BaseModel):
    symbol: str
    record_count: int


class DataStats(BaseModel):
    """Store-wide counts used for post-run reporting."""

    total_historical_records: int = 0
    unique_symbols: int = 0
    market_cache_entries: int = 0
    oldest: Optional[datetime] = None
    newest: Optional[datetime] = None
    symbol_counts: List[SymbolCount] = Field(default_factory=list)


class BackfillMode(str, Enum):
    WINDOW = "window"
    FULL = "full"


class IngestionFailure(BaseModel):
    kind: FailureKind
    message: str

    @classmethod
    def from_error(cls, exc: IngestionError) -> "IngestionFailure":
        return cls(kind=exc.kind, message=exc.message)


class IngestionSummary(BaseModel):
    """Outcome of a pipeline run."""

    operation: str
    symbols: List[str] = Field(default_factory=list)
    rows_affected: int = 0
    failure: Optional[IngestionFailure] = None
    errors: List[str] = Field(default_factory=list)
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.failure is None


class SnapshotSummary(IngestionSummary):
    operation: str = "snapshot"
    snapshot: Optional[MarketSnapshot] = None


class BackfillSummary(IngestionSummary):
    operation: str = "backfill"
    mode: BackfillMode = BackfillMode.WINDOW
    window_days: Optional[int] = None
    windows_attempted: int = 0
    stored_total: Optional[int] = None
    latest_date_time: Optional[datetime] = None


class ProbeSummary(IngestionSummary):
    operation: str = "probe"
    resolved: List[ResolvedQuote] = Field(default_factory=list)
    selected_symbol: Optional[str] = None
    used_default: bool = False


class BatchSummary(IngestionSummary):
    """Roll-up of several per-symbol runs."""

    succeeded: List[str] = Field(default_factory=list)
    failed: List[str] = Field(default_factory=list)
    results: List[SerializeAsAny[IngestionSummary]] = Field(default_factory=list)
