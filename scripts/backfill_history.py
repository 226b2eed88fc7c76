from __future__ import annotations

import argparse
import asyncio
import json
import logging

from market_ingest.config import settings
from market_ingest.errors import FailureKind
from market_ingest.ingestion.pipeline import build_pipeline

logging.basicConfig(level=settings.log_level, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")
logger = logging.getLogger(__name__)


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Backfill historical prices, trying lookback windows shortest-first."
    )
    parser.add_argument("symbols", nargs="+", help="One or more provider tickers.")
    parser.add_argument(
        "--full",
        action="store_true",
        help="Replace every stored row for the symbol (first-ever backfill) instead of only the window.",
    )
    return parser.parse_args()


async def main() -> int:
    args = parse_args()
    pipeline = build_pipeline()
    stats_before = pipeline.store.stats()
    if len(args.symbols) == 1:
        summary = await pipeline.run_backfill(args.symbols[0], full=args.full)
        store_failed = summary.failure is not None and summary.failure.kind is FailureKind.STORE
    else:
        summary = await pipeline.run_backfill_many(args.symbols, full=args.full)
        store_failed = any(r.failure is not None and r.failure.kind is FailureKind.STORE for r in summary.results)

    stats_after = pipeline.store.stats()
    logger.info(
        "Historical records: %s -> %s across %s symbols",
        stats_before.total_historical_records,
        stats_after.total_historical_records,
        stats_after.unique_symbols,
    )
    logger.info("Backfill summary: %s", summary.message)
    print(json.dumps(summary.model_dump(), indent=2, default=str))
    return 1 if store_failed else 0


if __name__ == "__main__":
    raise SystemExit(asyncio.run(main()))
