"""
SQL Market Store

SQLAlchemy-backed implementation of the market data store. Every mutation
runs in a single ``sessionmaker.begin()`` transaction, so a historical
replace (delete-range then bulk insert) commits entirely or not at all.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import List, Optional, Sequence

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    DateTime,
    Float,
    Integer,
    String,
    UniqueConstraint,
    create_engine,
    delete,
    func,
    or_,
    select,
)
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import declarative_base, sessionmaker

from market_ingest.errors import StoreError
from market_ingest.ingestion.values import to_utc
from market_ingest.models import (
    DataStats,
    HistoricalRecord,
    MarketSnapshot,
    StockRecord,
    SymbolCount,
)
from market_ingest.storage import dedupe_by_date

logger = logging.getLogger(__name__)

Base = declarative_base()


class MarketDataCacheRow(Base):
    """Latest quote cache, one row per symbol."""

    __tablename__ = "market_data_cache"

    symbol = Column(String(32), primary_key=True)  # e.g., "^CASE30"
    company_name = Column(String, nullable=False)
    company_name_localized = Column(String, nullable=True)

    # Price data
    current_price = Column(Float, nullable=False)
    previous_close = Column(Float, nullable=False)
    price_change = Column(Float, nullable=False)
    price_change_percent = Column(Float, nullable=False)
    volume = Column(BigInteger, nullable=True)

    sector = Column(String, nullable=True)
    sector_localized = Column(String, nullable=True)

    last_updated = Column(DateTime(timezone=True), nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)

    def __repr__(self):
        return f"<MarketDataCache(symbol={self.symbol}, price={self.current_price}, updated={self.last_updated})>"


class StockRow(Base):
    """Minimal stock row written by symbol probing."""

    __tablename__ = "stocks"

    symbol = Column(String(32), primary_key=True)
    name = Column(String, nullable=False)
    exchange = Column(String, nullable=False)
    currency = Column(String(8), nullable=True)
    last_updated = Column(DateTime(timezone=True), nullable=False)


class HistoricalDataRow(Base):
    """Daily time-series point, unique per (symbol, date_time)."""

    __tablename__ = "historical_data"
    __table_args__ = (
        UniqueConstraint("symbol", "date_time", name="uq_historical_data_symbol_date_time"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    symbol = Column(String(32), nullable=False, index=True)
    date_time = Column(DateTime(timezone=True), nullable=False, index=True)

    open_price = Column(Float, nullable=True)
    high_price = Column(Float, nullable=True)
    low_price = Column(Float, nullable=True)
    close_price = Column(Float, nullable=False)
    volume = Column(BigInteger, nullable=True)
    adjusted_close = Column(Float, nullable=True)

    def __repr__(self):
        return f"<HistoricalData {self.symbol} @ {self.date_time}: {self.close_price}>"


def _snapshot_from_row(row: MarketDataCacheRow) -> MarketSnapshot:
    return MarketSnapshot(
        symbol=row.symbol,
        company_name=row.company_name,
        company_name_localized=row.company_name_localized,
        current_price=row.current_price,
        previous_close=row.previous_close,
        price_change=row.price_change,
        price_change_percent=row.price_change_percent,
        volume=row.volume,
        sector=row.sector,
        sector_localized=row.sector_localized,
        last_updated=to_utc(row.last_updated),
        is_active=row.is_active,
    )


def _record_from_row(row: HistoricalDataRow) -> HistoricalRecord:
    return HistoricalRecord(
        symbol=row.symbol,
        date_time=to_utc(row.date_time),
        open_price=row.open_price,
        high_price=row.high_price,
        low_price=row.low_price,
        close_price=row.close_price,
        volume=row.volume,
        adjusted_close=row.adjusted_close,
    )


class SqlMarketStore:
    """Market data store on any SQLAlchemy-supported database."""

    def __init__(self, database_url: str, **engine_kwargs) -> None:
        self.engine = create_engine(database_url, **engine_kwargs)
        Base.metadata.create_all(bind=self.engine)
        self._session_factory = sessionmaker(bind=self.engine, expire_on_commit=False)

    def upsert_snapshot(self, snapshot: MarketSnapshot) -> None:
        values = snapshot.model_dump()
        values["last_updated"] = to_utc(snapshot.last_updated)
        try:
            with self._session_factory.begin() as session:
                session.merge(MarketDataCacheRow(**values))
        except SQLAlchemyError as exc:
            raise StoreError(f"snapshot upsert failed for {snapshot.symbol}: {exc}", symbol=snapshot.symbol) from exc
        logger.info("Upserted snapshot for %s", snapshot.symbol)

    def upsert_stock(self, stock: StockRecord) -> None:
        values = stock.model_dump()
        values["last_updated"] = to_utc(stock.last_updated)
        try:
            with self._session_factory.begin() as session:
                session.merge(StockRow(**values))
        except SQLAlchemyError as exc:
            raise StoreError(f"stock upsert failed for {stock.symbol}: {exc}", symbol=stock.symbol) from exc
        logger.info("Upserted stock %s", stock.symbol)

    def replace_history(
        self, symbol: str, records: Sequence[HistoricalRecord], since: Optional[datetime]
    ) -> int:
        incoming = dedupe_by_date(records)
        stmt = delete(HistoricalDataRow).where(HistoricalDataRow.symbol == symbol)
        if since is not None:
            stmt = stmt.where(
                or_(
                    HistoricalDataRow.date_time >= to_utc(since),
                    HistoricalDataRow.date_time.in_([r.date_time for r in incoming]),
                )
            )
        try:
            with self._session_factory.begin() as session:
                removed = session.execute(stmt.execution_options(synchronize_session=False)).rowcount
                session.add_all([HistoricalDataRow(**r.model_dump()) for r in incoming])
        except SQLAlchemyError as exc:
            raise StoreError(f"history replace failed for {symbol}: {exc}", symbol=symbol) from exc

        logger.info("Replaced %s rows with %s records for %s", removed, len(incoming), symbol)
        return len(incoming)

    def count_history(self, symbol: Optional[str] = None) -> int:
        stmt = select(func.count(HistoricalDataRow.id))
        if symbol is not None:
            stmt = stmt.where(HistoricalDataRow.symbol == symbol)
        with self._session_factory() as session:
            return int(session.scalar(stmt) or 0)

    def latest_history(self, symbol: str) -> Optional[HistoricalRecord]:
        stmt = (
            select(HistoricalDataRow)
            .where(HistoricalDataRow.symbol == symbol)
            .order_by(HistoricalDataRow.date_time.desc())
            .limit(1)
        )
        with self._session_factory() as session:
            row = session.scalars(stmt).first()
            return _record_from_row(row) if row else None

    def load_history(
        self, symbol: str, since: Optional[datetime] = None, limit: Optional[int] = None
    ) -> List[HistoricalRecord]:
        stmt = select(HistoricalDataRow).where(HistoricalDataRow.symbol == symbol)
        if since is not None:
            stmt = stmt.where(HistoricalDataRow.date_time >= to_utc(since))
        stmt = stmt.order_by(HistoricalDataRow.date_time.desc())
        if limit:
            stmt = stmt.limit(limit)
        with self._session_factory() as session:
            rows = session.scalars(stmt).all()
            return [_record_from_row(row) for row in reversed(rows)]

    def get_snapshot(self, symbol: str) -> Optional[MarketSnapshot]:
        with self._session_factory() as session:
            row = session.get(MarketDataCacheRow, symbol)
            return _snapshot_from_row(row) if row else None

    def list_snapshots(self, active_only: bool = False) -> List[MarketSnapshot]:
        stmt = select(MarketDataCacheRow).order_by(MarketDataCacheRow.symbol)
        if active_only:
            stmt = stmt.where(MarketDataCacheRow.is_active.is_(True))
        with self._session_factory() as session:
            return [_snapshot_from_row(row) for row in session.scalars(stmt).all()]

    def get_stock(self, symbol: str) -> Optional[StockRecord]:
        with self._session_factory() as session:
            row = session.get(StockRow, symbol)
            if row is None:
                return None
            return StockRecord(
                symbol=row.symbol,
                name=row.name,
                exchange=row.exchange,
                currency=row.currency,
                last_updated=to_utc(row.last_updated),
            )

    def stats(self) -> DataStats:
        with self._session_factory() as session:
            total = int(session.scalar(select(func.count(HistoricalDataRow.id))) or 0)
            cache_entries = int(session.scalar(select(func.count()).select_from(MarketDataCacheRow)) or 0)
            oldest, newest = session.execute(
                select(func.min(HistoricalDataRow.date_time), func.max(HistoricalDataRow.date_time))
            ).one()
            per_symbol = session.execute(
                select(HistoricalDataRow.symbol, func.count(HistoricalDataRow.id).label("n"))
                .group_by(HistoricalDataRow.symbol)
                .order_by(func.count(HistoricalDataRow.id).desc())
            ).all()

        return DataStats(
            total_historical_records=total,
            unique_symbols=len(per_symbol),
            market_cache_entries=cache_entries,
            oldest=to_utc(oldest) if oldest else None,
            newest=to_utc(newest) if newest else None,
            symbol_counts=[SymbolCount(symbol=sym, record_count=int(n)) for sym, n in per_symbol[:10]],
        )
