import pytest
from fastapi.testclient import TestClient

from conftest import FakeProvider, make_points, make_quote
from market_ingest.api.main import app, get_pipeline
from market_ingest.ingestion.pipeline import DataIngestionPipeline
from market_ingest.storage import ParquetMarketStore


@pytest.fixture
def provider():
    return FakeProvider(
        quotes={"^CASE30": make_quote(120, 100, longName="EGX 30"), "COMI.CA": make_quote(80, 82)},
        charts={30: {"quotes": make_points(10, 12)}},
    )


@pytest.fixture
def client(test_settings, provider):
    pipeline = DataIngestionPipeline(
        ParquetMarketStore(test_settings.data_dir), test_settings, provider_factory=lambda http_client: provider
    )
    app.dependency_overrides[get_pipeline] = lambda: pipeline
    yield TestClient(app)
    app.dependency_overrides.clear()


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_snapshot_then_read_back(client):
    response = client.post("/ingest/snapshot/^CASE30", json={"sector": "Index"})
    assert response.status_code == 200
    body = response.json()
    assert body["failure"] is None
    assert body["rows_affected"] == 1
    assert body["snapshot"]["price_change_percent"] == pytest.approx(20.0)

    snapshot = client.get("/snapshots/^CASE30").json()
    assert snapshot["company_name"] == "EGX 30"
    assert snapshot["sector"] == "Index"
    assert [s["symbol"] for s in client.get("/snapshots").json()] == ["^CASE30"]


def test_failed_snapshot_is_reported_in_the_body(client):
    response = client.post("/ingest/snapshot/UNKNOWN")

    assert response.status_code == 200
    assert response.json()["failure"]["kind"] == "IncompleteQuoteData"
    assert client.get("/snapshots/UNKNOWN").status_code == 404


def test_refresh_active(client):
    client.post("/ingest/snapshot/^CASE30")
    client.post("/ingest/snapshot/COMI.CA")

    body = client.post("/ingest/snapshots/refresh").json()

    assert body["operation"] == "snapshot-refresh"
    assert sorted(body["succeeded"]) == ["COMI.CA", "^CASE30"]
    assert len(body["results"]) == 2


def test_backfill_history_and_stats(client):
    body = client.post("/ingest/backfill/IDX", params={"full": "true"}).json()
    assert body["mode"] == "full"
    assert body["window_days"] == 30
    assert body["rows_affected"] == 10

    history = client.get("/history/IDX", params={"days": 3650, "limit": 4}).json()
    assert len(history) == 4
    assert history[-1]["close_price"] == 109.0

    stats = client.get("/stats").json()
    assert stats["total_historical_records"] == 10
    assert stats["symbol_counts"] == [{"symbol": "IDX", "record_count": 10}]


def test_probe(client):
    body = client.post(
        "/ingest/probe",
        json={"candidates": [{"ticker": "COMI.CA"}, {"ticker": "^CASE30", "hints": ["EGX 30"]}]},
    ).json()

    assert body["selected_symbol"] == "^CASE30"
    assert [r["symbol"] for r in body["resolved"]] == ["COMI.CA", "^CASE30"]


def test_probe_requires_candidates(client):
    assert client.post("/ingest/probe", json={"candidates": []}).status_code == 422
