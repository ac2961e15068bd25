"""One-shot script to backfill the daily bar archive.

Usage (from the repository root):
    python -m scripts.backfill_bars --markets KOSPI KOSDAQ --count 120
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

# Ensure project root is on path
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from app.config import load_config
from app.market.archive import BarArchive, run_backfill
from app.market.kis_client import KisClient
from app.market.rate_limiter import RateLimiter
from app.scan_manager import ScanManager


async def _main(markets: tuple[str, ...], count: int) -> None:
    config = load_config()
    limiter = RateLimiter(config.max_calls_per_second)
    client = KisClient(config, limiter)
    report = await run_backfill(
        client,
        BarArchive(config.archive_dir),
        markets=markets,
        count=count,
        scan_manager=ScanManager(max_concurrency=config.max_concurrency),
    )
    logging.getLogger(__name__).info("Done → %s", report.to_dict())


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Backfill the daily bar archive")
    parser.add_argument("--markets", nargs="+", default=["KOSPI", "KOSDAQ"])
    parser.add_argument("--count", type=int, default=120)
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    asyncio.run(_main(tuple(args.markets), args.count))
