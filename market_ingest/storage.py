from __future__ import annotations

import logging
import os
import threading
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Protocol, Sequence

import pandas as pd

from market_ingest.config import Settings
from market_ingest.errors import StoreError
from market_ingest.ingestion.values import to_utc
from market_ingest.models import (
    DataStats,
    HistoricalRecord,
    MarketSnapshot,
    StockRecord,
    SymbolCount,
)

logger = logging.getLogger(__name__)

SNAPSHOT_COLUMNS = list(MarketSnapshot.model_fields)
STOCK_COLUMNS = list(StockRecord.model_fields)
HISTORY_COLUMNS = list(HistoricalRecord.model_fields)


class MarketDataStore(Protocol):
    """Storage contract for snapshots, stocks and historical records."""

    def upsert_snapshot(self, snapshot: MarketSnapshot) -> None: ...

    def upsert_stock(self, stock: StockRecord) -> None: ...

    def replace_history(
        self, symbol: str, records: Sequence[HistoricalRecord], since: Optional[datetime]
    ) -> int: ...

    def count_history(self, symbol: Optional[str] = None) -> int: ...

    def latest_history(self, symbol: str) -> Optional[HistoricalRecord]: ...

    def load_history(
        self, symbol: str, since: Optional[datetime] = None, limit: Optional[int] = None
    ) -> List[HistoricalRecord]: ...

    def get_snapshot(self, symbol: str) -> Optional[MarketSnapshot]: ...

    def list_snapshots(self, active_only: bool = False) -> List[MarketSnapshot]: ...

    def get_stock(self, symbol: str) -> Optional[StockRecord]: ...

    def stats(self) -> DataStats: ...


def dedupe_by_date(records: Sequence[HistoricalRecord]) -> List[HistoricalRecord]:
    """Collapse records sharing a date_time, keeping the last occurrence."""
    by_date: Dict[datetime, HistoricalRecord] = {}
    for record in records:
        by_date[to_utc(record.date_time)] = record.model_copy(update={"date_time": to_utc(record.date_time)})
    return sorted(by_date.values(), key=lambda r: r.date_time)


def _frame_rows(df: pd.DataFrame) -> List[dict]:
    if df.empty:
        return []
    return df.astype(object).where(df.notna(), None).to_dict(orient="records")


class ParquetMarketStore:
    """Parquet-backed store for quick local iteration.

    Each table lives in its own file. Every mutation rewrites the table to a
    temporary file and swaps it in with ``os.replace``, so a failed write
    leaves the previous file intact.
    """

    SNAPSHOT_FILE = "market_snapshots.parquet"
    STOCK_FILE = "stocks.parquet"
    HISTORY_FILE = "historical_data.parquet"

    def __init__(self, data_dir: Path) -> None:
        self.data_dir = data_dir
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()

    @property
    def snapshot_path(self) -> Path:
        return self.data_dir / self.SNAPSHOT_FILE

    @property
    def stock_path(self) -> Path:
        return self.data_dir / self.STOCK_FILE

    @property
    def history_path(self) -> Path:
        return self.data_dir / self.HISTORY_FILE

    def _safe_read(self, path: Path, columns: List[str], date_columns: Sequence[str], strict: bool = False) -> pd.DataFrame:
        """Read parquet defensively.

        Read paths log and fall back to an empty frame on a corrupted file;
        write paths (``strict``) raise instead so the file is never reset.
        """
        if not path.exists():
            return pd.DataFrame(columns=columns)
        try:
            df = pd.read_parquet(path)
            for col in date_columns:
                df[col] = pd.to_datetime(df[col], utc=True)
            return df
        except Exception as exc:  # noqa: BLE001
            if strict:
                raise StoreError(f"cannot read {path}: {exc}") from exc
            logger.warning("Parquet file unreadable at %s, treating as empty: %s", path, exc)
            return pd.DataFrame(columns=columns)

    def _atomic_write(self, df: pd.DataFrame, path: Path) -> None:
        tmp_path = path.with_name(path.name + ".tmp")
        try:
            df.to_parquet(tmp_path, index=False)
            os.replace(tmp_path, path)
        except Exception as exc:  # noqa: BLE001
            if tmp_path.exists():
                tmp_path.unlink()
            raise StoreError(f"failed to write {path}: {exc}") from exc

    def _upsert_row(self, path: Path, columns: List[str], date_columns: Sequence[str], row: dict) -> None:
        with self._lock:
            df = self._safe_read(path, columns, date_columns, strict=True)
            df_new = pd.DataFrame([row], columns=columns)
            for col in date_columns:
                df_new[col] = pd.to_datetime(df_new[col], utc=True)
            if not df.empty:
                df = df[df["symbol"] != row["symbol"]]
            df = df_new if df.empty else pd.concat([df, df_new], ignore_index=True)
            df = df.sort_values(by="symbol")
            self._atomic_write(df, path)

    def upsert_snapshot(self, snapshot: MarketSnapshot) -> None:
        self._upsert_row(self.snapshot_path, SNAPSHOT_COLUMNS, ["last_updated"], snapshot.model_dump())
        logger.info("Upserted snapshot for %s", snapshot.symbol)

    def upsert_stock(self, stock: StockRecord) -> None:
        self._upsert_row(self.stock_path, STOCK_COLUMNS, ["last_updated"], stock.model_dump())
        logger.info("Upserted stock %s", stock.symbol)

    def replace_history(
        self, symbol: str, records: Sequence[HistoricalRecord], since: Optional[datetime]
    ) -> int:
        incoming = dedupe_by_date(records)
        with self._lock:
            df = self._safe_read(self.history_path, HISTORY_COLUMNS, ["date_time"], strict=True)
            if not df.empty:
                drop = df["symbol"] == symbol
                if since is not None:
                    incoming_dates = [pd.Timestamp(r.date_time) for r in incoming]
                    drop &= (df["date_time"] >= pd.Timestamp(to_utc(since))) | df["date_time"].isin(incoming_dates)
                removed = int(drop.sum())
                df = df[~drop]
            else:
                removed = 0

            if incoming:
                df_new = pd.DataFrame([r.model_dump() for r in incoming], columns=HISTORY_COLUMNS)
                df_new["date_time"] = pd.to_datetime(df_new["date_time"], utc=True)
                df = df_new if df.empty else pd.concat([df, df_new], ignore_index=True)

            df = df.sort_values(by=["symbol", "date_time"])
            self._atomic_write(df, self.history_path)

        logger.info("Replaced %s rows with %s records for %s in %s", removed, len(incoming), symbol, self.history_path)
        return len(incoming)

    def _history_frame(self, symbol: Optional[str] = None) -> pd.DataFrame:
        df = self._safe_read(self.history_path, HISTORY_COLUMNS, ["date_time"])
        if symbol is not None and not df.empty:
            df = df[df["symbol"] == symbol]
        return df

    def count_history(self, symbol: Optional[str] = None) -> int:
        return len(self._history_frame(symbol))

    def latest_history(self, symbol: str) -> Optional[HistoricalRecord]:
        records = self.load_history(symbol)
        return records[-1] if records else None

    def load_history(
        self, symbol: str, since: Optional[datetime] = None, limit: Optional[int] = None
    ) -> List[HistoricalRecord]:
        df = self._history_frame(symbol)
        if df.empty:
            return []
        if since is not None:
            df = df[df["date_time"] >= pd.Timestamp(to_utc(since))]
        df = df.sort_values(by="date_time")
        if limit:
            df = df.tail(limit)
        return [HistoricalRecord(**row) for row in _frame_rows(df)]

    def get_snapshot(self, symbol: str) -> Optional[MarketSnapshot]:
        matches = [s for s in self.list_snapshots() if s.symbol == symbol]
        return matches[0] if matches else None

    def list_snapshots(self, active_only: bool = False) -> List[MarketSnapshot]:
        df = self._safe_read(self.snapshot_path, SNAPSHOT_COLUMNS, ["last_updated"])
        snapshots = [MarketSnapshot(**row) for row in _frame_rows(df)]
        if active_only:
            snapshots = [s for s in snapshots if s.is_active]
        return snapshots

    def get_stock(self, symbol: str) -> Optional[StockRecord]:
        df = self._safe_read(self.stock_path, STOCK_COLUMNS, ["last_updated"])
        if df.empty:
            return None
        rows = _frame_rows(df[df["symbol"] == symbol])
        return StockRecord(**rows[0]) if rows else None

    def stats(self) -> DataStats:
        history = self._history_frame()
        snapshots = self._safe_read(self.snapshot_path, SNAPSHOT_COLUMNS, ["last_updated"])
        if history.empty:
            return DataStats(market_cache_entries=len(snapshots))

        counts = history.groupby("symbol").size().sort_values(ascending=False)
        return DataStats(
            total_historical_records=len(history),
            unique_symbols=len(counts),
            market_cache_entries=len(snapshots),
            oldest=history["date_time"].min().to_pydatetime(),
            newest=history["date_time"].max().to_pydatetime(),
            symbol_counts=[SymbolCount(symbol=sym, record_count=int(n)) for sym, n in counts.head(10).items()],
        )


def build_store(config: Settings) -> MarketDataStore:
    """SQL store when a database URL is configured, parquet otherwise."""
    if config.database_url:
        from market_ingest.sql_storage import SqlMarketStore

        return SqlMarketStore(config.database_url)
    return ParquetMarketStore(config.data_dir)
