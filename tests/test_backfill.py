import asyncio
from dataclasses import replace
from datetime import timedelta

import pytest

from conftest import FIXED_NOW, FakeProvider, fixed_clock, make_points, transport_error
from market_ingest.errors import FailureKind, StoreError
from market_ingest.ingestion.backfill import (
    DEFAULT_WINDOWS_DAYS,
    HistoricalBackfiller,
    point_to_record,
    points_to_records,
)
from market_ingest.ingestion.pipeline import DataIngestionPipeline
from market_ingest.models import BackfillMode, HistoricalRecord
from market_ingest.storage import ParquetMarketStore


def make_backfiller(provider, store, windows=(30, 90)):
    return HistoricalBackfiller(provider, store, request_timeout_seconds=5.0, windows=windows, clock=fixed_clock)


class FailingWriteStore:
    """Delegates reads, fails every history write."""

    def __init__(self, inner):
        self.inner = inner

    def replace_history(self, symbol, records, since):
        raise StoreError("database is locked", symbol=symbol)

    def __getattr__(self, name):
        return getattr(self.inner, name)


def test_points_without_close_are_dropped():
    points = [
        {"date": FIXED_NOW, "close": None, "open": 1.0},
        {"date": FIXED_NOW - timedelta(days=1), "close": "n/a"},
        {"date": FIXED_NOW - timedelta(days=2), "close": 150.5, "open": None, "high": None, "low": None, "volume": None},
        "garbage",
    ]

    records = points_to_records("IDX", points)

    assert len(records) == 1
    assert records[0].close_price == 150.5
    assert records[0].open_price is None
    assert records[0].volume is None
    assert records[0].adjusted_close is None


def test_point_with_unreadable_date_is_dropped():
    assert point_to_record("IDX", {"date": "yesterday", "close": 10.0}) is None
    assert point_to_record("IDX", {"close": 10.0}) is None


def test_point_dates_accept_epoch_and_iso():
    from_epoch = point_to_record("IDX", {"date": 1760000000, "close": 1})
    from_iso = point_to_record("IDX", {"date": "2025-10-09T08:53:20Z", "close": 1})
    assert from_epoch.date_time == from_iso.date_time


@pytest.mark.asyncio
async def test_falls_through_failed_window_and_stores_next(store):
    provider = FakeProvider(charts={30: transport_error("IDX"), 90: {"quotes": make_points(60, 89)}})

    summary = await make_backfiller(provider, store).backfill("IDX")

    assert summary.ok
    assert summary.rows_affected == 60
    assert summary.window_days == 90
    assert summary.windows_attempted == 2
    assert summary.stored_total == 60
    assert summary.latest_date_time == FIXED_NOW - timedelta(days=30)
    assert len(summary.errors) == 1
    assert provider.chart_calls == [("IDX", 30), ("IDX", 90)]
    assert store.count_history("IDX") == 60


@pytest.mark.asyncio
async def test_stops_at_first_window_with_records(store):
    provider = FakeProvider(charts={30: {"data": {"data": make_points(20, 25)}}, 90: {"quotes": make_points(60, 89)}})

    summary = await make_backfiller(provider, store).backfill("IDX")

    assert summary.window_days == 30
    assert summary.rows_affected == 20
    assert provider.chart_calls == [("IDX", 30)]


@pytest.mark.asyncio
async def test_window_with_only_null_closes_counts_as_empty(store):
    nulls = [dict(p, close=None) for p in make_points(10, 20)]
    provider = FakeProvider(charts={30: {"results": nulls}, 90: {"quotes": make_points(5, 60)}})

    summary = await make_backfiller(provider, store).backfill("IDX")

    assert summary.window_days == 90
    assert store.count_history("IDX") == 5


@pytest.mark.asyncio
async def test_all_windows_failing_leaves_store_untouched(store):
    existing = [HistoricalRecord(symbol="IDX", date_time=FIXED_NOW - timedelta(days=d), close_price=1.0) for d in range(3)]
    store.replace_history("IDX", existing, since=None)
    provider = FakeProvider(charts={30: {"quotes": []}, 90: transport_error("IDX")})

    summary = await make_backfiller(provider, store).backfill("IDX")

    assert not summary.ok
    assert summary.failure.kind is FailureKind.NO_HISTORICAL_DATA
    assert summary.rows_affected == 0
    assert summary.windows_attempted == 2
    assert [r.close_price for r in store.load_history("IDX")] == [1.0, 1.0, 1.0]


@pytest.mark.asyncio
async def test_unrecognized_payload_shape_falls_through(store):
    provider = FakeProvider(charts={30: {"unexpected": {"rows": []}}, 90: [{"date": FIXED_NOW, "close": 3.0}]})

    summary = await make_backfiller(provider, store).backfill("IDX")

    assert summary.window_days == 90
    assert store.latest_history("IDX").close_price == 3.0


@pytest.mark.asyncio
async def test_repeated_backfill_is_idempotent(store):
    provider = FakeProvider(charts={30: {"quotes": make_points(20, 25)}})
    backfiller = make_backfiller(provider, store)

    await backfiller.backfill("IDX")
    first = store.load_history("IDX")
    await backfiller.backfill("IDX")

    assert store.load_history("IDX") == first
    assert store.count_history("IDX") == 20


@pytest.mark.asyncio
async def test_window_mode_keeps_rows_older_than_window(store):
    old = [HistoricalRecord(symbol="IDX", date_time=FIXED_NOW - timedelta(days=d), close_price=1.0) for d in (200, 201)]
    store.replace_history("IDX", old, since=None)
    provider = FakeProvider(charts={30: {"quotes": make_points(10, 10)}})

    await make_backfiller(provider, store).backfill("IDX", BackfillMode.WINDOW)

    assert store.count_history("IDX") == 12


@pytest.mark.asyncio
async def test_full_mode_replaces_every_row(store):
    old = [HistoricalRecord(symbol="IDX", date_time=FIXED_NOW - timedelta(days=d), close_price=1.0) for d in (200, 201)]
    store.replace_history("IDX", old, since=None)
    provider = FakeProvider(charts={30: {"quotes": make_points(10, 10)}})

    summary = await make_backfiller(provider, store).backfill("IDX", BackfillMode.FULL)

    assert summary.mode is BackfillMode.FULL
    assert summary.stored_total == 10
    assert store.count_history("IDX") == 10


@pytest.mark.asyncio
async def test_store_failure_is_reported(parquet_store):
    provider = FakeProvider(charts={30: {"quotes": make_points(5, 5)}})

    summary = await make_backfiller(provider, FailingWriteStore(parquet_store)).backfill("IDX")

    assert summary.failure.kind is FailureKind.STORE
    assert provider.chart_calls == [("IDX", 30)]
    assert parquet_store.count_history("IDX") == 0


@pytest.mark.asyncio
async def test_explicit_windows_are_tried_shortest_first(store):
    provider = FakeProvider(charts={180: {"quotes": make_points(3, 100)}})

    summary = await make_backfiller(provider, store).backfill("IDX", windows=[365, 180, 7])

    assert [days for _, days in provider.chart_calls] == [7, 180]
    assert summary.window_days == 180


@pytest.mark.asyncio
async def test_backfill_many_dedupes_and_rolls_up(store):
    provider = FakeProvider(charts={30: {"quotes": make_points(4, 5)}})

    batch = await make_backfiller(provider, store).backfill_many(["A", "B", "A"], concurrency=2)

    assert batch.symbols == ["A", "B"]
    assert sorted(batch.succeeded) == ["A", "B"]
    assert batch.failed == []
    assert batch.rows_affected == 8
    assert len(batch.results) == 2
    assert store.count_history() == 8


@pytest.mark.asyncio
async def test_backfill_many_reports_failures(parquet_store):
    provider = FakeProvider(charts={})

    batch = await make_backfiller(provider, parquet_store).backfill_many(["A", "B"])

    assert batch.succeeded == []
    assert batch.failed == ["A", "B"]
    assert len(batch.errors) == 2
    assert batch.model_dump()["results"][0]["failure"]["kind"] == "NoUsableHistoricalData"


@pytest.mark.asyncio
async def test_concurrent_backfills_of_one_symbol_do_not_duplicate(parquet_store):
    provider = FakeProvider(charts={30: {"quotes": make_points(15, 20)}}, delay=0.01)
    backfiller = make_backfiller(provider, parquet_store)

    results = await asyncio.gather(*(backfiller.backfill("IDX") for _ in range(3)))

    assert all(r.ok for r in results)
    assert parquet_store.count_history("IDX") == 15


class InFlightTrackingProvider(FakeProvider):
    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.in_flight = 0
        self.peak = 0

    async def fetch_chart(self, symbol, start, end, interval="1d"):
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        try:
            return await super().fetch_chart(symbol, start, end, interval)
        finally:
            self.in_flight -= 1


@pytest.mark.asyncio
async def test_pipeline_runs_serialize_backfills_of_one_symbol(test_settings):
    provider = InFlightTrackingProvider(charts={30: {"quotes": make_points(5, 5)}}, delay=0.01)
    pipeline = DataIngestionPipeline(
        ParquetMarketStore(test_settings.data_dir), test_settings, provider_factory=lambda client: provider
    )

    results = await asyncio.gather(pipeline.run_backfill("IDX"), pipeline.run_backfill("IDX"), pipeline.run_backfill("OTHER"))

    assert all(r.ok for r in results)
    assert provider.peak == 2
    assert pipeline.store.count_history("IDX") == 5


def test_pipeline_falls_back_to_default_windows(test_settings):
    config = replace(test_settings, backfill_windows_raw="")
    pipeline = DataIngestionPipeline(ParquetMarketStore(config.data_dir), config)

    assert pipeline._backfiller(FakeProvider()).windows == DEFAULT_WINDOWS_DAYS == (30, 90, 180, 365)
