from __future__ import annotations

import argparse
import asyncio
import json
import logging

from market_ingest.config import settings
from market_ingest.ingestion.pipeline import build_pipeline

logging.basicConfig(level=settings.log_level, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")
logger = logging.getLogger(__name__)


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Probe candidate tickers in priority order and report which resolve."
    )
    parser.add_argument(
        "candidates",
        nargs="+",
        help="Candidate tickers, highest priority first (e.g. ^CASE30 CASE30 EGX30.CA EGPT).",
    )
    return parser.parse_args()


async def main() -> None:
    args = parse_args()
    pipeline = build_pipeline()
    summary = await pipeline.run_probe(args.candidates)
    for index, quote in enumerate(summary.resolved, start=1):
        logger.info("%s. %s - %s @ %s (%s)", index, quote.symbol, quote.display_name, quote.price, quote.exchange)
    logger.info("Probe summary: %s", summary.message)
    print(json.dumps(summary.model_dump(), indent=2, default=str))


if __name__ == "__main__":
    asyncio.run(main())
