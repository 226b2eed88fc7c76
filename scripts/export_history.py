from __future__ import annotations

import argparse
import logging
from pathlib import Path

import pandas as pd

from market_ingest.config import settings
from market_ingest.storage import build_store

logging.basicConfig(level=settings.log_level, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")
logger = logging.getLogger(__name__)


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Export a symbol's stored historical prices to CSV.")
    parser.add_argument("symbol", help="Symbol whose history to export.")
    parser.add_argument(
        "--output",
        type=Path,
        default=None,
        help="Destination CSV path (default: data/export/<symbol>_history.csv).",
    )
    return parser.parse_args()


def export_history(symbol: str, destination: Path) -> int:
    store = build_store(settings)
    records = store.load_history(symbol)
    if not records:
        logger.warning("No stored history for %s. Nothing to export.", symbol)
        return 0

    destination.parent.mkdir(parents=True, exist_ok=True)
    df = pd.DataFrame([r.model_dump() for r in records])
    df.to_csv(destination, index=False)
    logger.info("Exported %s rows to %s", len(df), destination)
    return len(df)


def main() -> None:
    args = parse_args()
    safe_name = "".join(ch if ch.isalnum() else "_" for ch in args.symbol).strip("_")
    output = args.output or settings.data_dir / "export" / f"{safe_name}_history.csv"
    rows = export_history(args.symbol, output)
    logger.info("Export complete: %s rows -> %s", rows, output)


if __name__ == "__main__":
    main()
