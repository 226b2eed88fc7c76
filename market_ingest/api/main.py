from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from market_ingest.config import settings
from market_ingest.ingestion.pipeline import DataIngestionPipeline, build_pipeline
from market_ingest.models import (
    BackfillSummary,
    BatchSummary,
    CandidateSymbol,
    DataStats,
    HistoricalRecord,
    MarketSnapshot,
    ProbeSummary,
    SnapshotSummary,
    SymbolProfile,
)

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Market Ingest API",
    version="0.1.0",
    description="Ingestion triggers and read-only views over the quote cache and price history.",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

pipeline = build_pipeline()


def get_pipeline() -> DataIngestionPipeline:
    return pipeline


class ProbeRequest(BaseModel):
    candidates: List[CandidateSymbol] = Field(..., min_length=1, description="Candidates, highest priority first.")


@app.get("/health")
async def health() -> dict:
    return {"status": "ok"}


@app.post("/ingest/snapshot/{symbol}", response_model=SnapshotSummary)
async def trigger_snapshot(
    symbol: str,
    profile: Optional[SymbolProfile] = None,
    pipe: DataIngestionPipeline = Depends(get_pipeline),
) -> SnapshotSummary:
    return await pipe.run_snapshot(symbol, profile)


@app.post("/ingest/snapshots/refresh", response_model=BatchSummary)
async def trigger_refresh(pipe: DataIngestionPipeline = Depends(get_pipeline)) -> BatchSummary:
    return await pipe.run_refresh_active()


@app.post("/ingest/backfill/{symbol}", response_model=BackfillSummary)
async def trigger_backfill(
    symbol: str,
    full: bool = Query(False, description="Replace every stored row for the symbol instead of only the window"),
    pipe: DataIngestionPipeline = Depends(get_pipeline),
) -> BackfillSummary:
    return await pipe.run_backfill(symbol, full=full)


@app.post("/ingest/probe", response_model=ProbeSummary)
async def trigger_probe(request: ProbeRequest, pipe: DataIngestionPipeline = Depends(get_pipeline)) -> ProbeSummary:
    return await pipe.run_probe(request.candidates)


@app.get("/snapshots", response_model=List[MarketSnapshot])
async def list_snapshots(
    active_only: bool = Query(False, description="Only rows flagged active"),
    pipe: DataIngestionPipeline = Depends(get_pipeline),
) -> List[MarketSnapshot]:
    return pipe.store.list_snapshots(active_only=active_only)


@app.get("/snapshots/{symbol}", response_model=MarketSnapshot)
async def get_snapshot(symbol: str, pipe: DataIngestionPipeline = Depends(get_pipeline)) -> MarketSnapshot:
    snapshot = pipe.store.get_snapshot(symbol)
    if snapshot is None:
        raise HTTPException(status_code=404, detail=f"No snapshot for {symbol}")
    return snapshot


@app.get("/history/{symbol}", response_model=List[HistoricalRecord])
async def get_history(
    symbol: str,
    days: int = Query(365, ge=1, le=3650, description="Lookback in calendar days"),
    limit: Optional[int] = Query(None, ge=1, le=5000, description="Keep only the most recent N records"),
    pipe: DataIngestionPipeline = Depends(get_pipeline),
) -> List[HistoricalRecord]:
    since = datetime.now(timezone.utc) - timedelta(days=days)
    return pipe.store.load_history(symbol, since=since, limit=limit)


@app.get("/stats", response_model=DataStats)
async def stats(pipe: DataIngestionPipeline = Depends(get_pipeline)) -> DataStats:
    return pipe.store.stats()
