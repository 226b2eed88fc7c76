from __future__ import annotations

from enum import Enum


class FailureKind(str, Enum):
    TRANSPORT = "TransportError"
    INCOMPLETE_QUOTE = "IncompleteQuoteData"
    NO_HISTORICAL_DATA = "NoUsableHistoricalData"
    NO_SYMBOL_RESOLVED = "NoSymbolResolved"
    STORE = "StoreError"


class IngestionError(Exception):
    """Base class for every failure the ingestion pipeline reports."""

    kind: FailureKind

    def __init__(self, message: str, symbol: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.symbol = symbol


class TransportError(IngestionError):
    """Network failure, timeout or unexpected status from the provider."""

    kind = FailureKind.TRANSPORT


class IncompleteQuoteData(IngestionError):
    """A quote is missing a required field or has a zero previous close."""

    kind = FailureKind.INCOMPLETE_QUOTE


class NoUsableHistoricalData(IngestionError):
    """Every lookback window was exhausted without a close-priced point."""

    kind = FailureKind.NO_HISTORICAL_DATA


class NoSymbolResolved(IngestionError):
    """No probe candidate resolved to a priced quote."""

    kind = FailureKind.NO_SYMBOL_RESOLVED


class StoreError(IngestionError):
    """A transactional write to the store failed and was rolled back."""

    kind = FailureKind.STORE
