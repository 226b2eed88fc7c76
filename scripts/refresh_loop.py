from __future__ import annotations

import argparse
import asyncio
import logging
import time

from market_ingest.config import settings
from market_ingest.ingestion.pipeline import DataIngestionPipeline, build_pipeline

logging.basicConfig(level=settings.log_level, format="%(asctime)s [%(levelname)s] %(message)s")
logger = logging.getLogger(__name__)


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Keep active snapshots fresh and their history backfilled.")
    parser.add_argument(
        "--interval",
        type=int,
        default=300,
        help="Seconds between snapshot refreshes (default: 300).",
    )
    parser.add_argument(
        "--backfill-every",
        type=int,
        default=0,
        help="Also backfill active symbols every N refreshes (0 disables).",
    )
    parser.add_argument(
        "--max-runs",
        type=int,
        default=0,
        help="Stop after N refreshes (0 runs forever).",
    )
    return parser.parse_args()


async def tick(pipeline: DataIngestionPipeline, run: int, backfill_every: int) -> None:
    refresh = await pipeline.run_refresh_active()
    logger.info("Run %s refresh: %s", run, refresh.message)
    for error in refresh.errors:
        logger.warning("Run %s: %s", run, error)

    if backfill_every and run % backfill_every == 0 and refresh.symbols:
        backfill = await pipeline.run_backfill_many(refresh.symbols)
        logger.info("Run %s backfill: %s", run, backfill.message)


async def main() -> None:
    args = parse_args()
    pipeline = build_pipeline()
    logger.info(
        "Refreshing active snapshots every %ss (backfill every %s runs)",
        args.interval,
        args.backfill_every or "-",
    )

    run = 0
    while not args.max_runs or run < args.max_runs:
        run += 1
        started = time.monotonic()
        await tick(pipeline, run, args.backfill_every)
        await asyncio.sleep(max(0.0, args.interval - (time.monotonic() - started)))


if __name__ == "__main__":
    asyncio.run(main())
