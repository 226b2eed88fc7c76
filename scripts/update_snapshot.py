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
    parser = argparse.ArgumentParser(description="Fetch the current quote for a symbol and upsert its snapshot row.")
    target = parser.add_mutually_exclusive_group(required=True)
    target.add_argument("symbol", nargs="?", help="Provider ticker, e.g. ^CASE30.")
    target.add_argument("--active", action="store_true", help="Refresh every active snapshot instead.")
    return parser.parse_args()


async def main() -> int:
    args = parse_args()
    pipeline = build_pipeline()
    if args.active:
        summary = await pipeline.run_refresh_active()
    else:
        summary = await pipeline.run_snapshot(args.symbol)
    logger.info("Snapshot summary: %s", summary.message)
    print(json.dumps(summary.model_dump(), indent=2, default=str))
    return 1 if summary.failure and summary.failure.kind is FailureKind.STORE else 0


if __name__ == "__main__":
    raise SystemExit(asyncio.run(main()))
