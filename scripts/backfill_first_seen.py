"""
Backfill package first-seen weeks from the imported weekly history.

Run once after importing historical daily downloads, before the first
trending refresh. Safe to rerun: packages that already have a first-seen
week are skipped.
"""

import argparse
import asyncio
import sys
import os
import logging

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

from core.logging import setup_logging
from storage.timeseries import TimeSeriesStore

logger = logging.getLogger(__name__)


async def backfill_first_seen(dry_run: bool):
    try:
        with TimeSeriesStore() as timeseries:
            missing_before = await timeseries.count_packages_without_first_seen()
            logger.info(f"Packages without a first-seen week: {missing_before}")

            inserted = await timeseries.backfill_package_first_seen(dry_run=dry_run)
            if dry_run:
                logger.info(f"Dry run complete. {len(inserted)} weeks would be processed.")
                return

            missing_after = await timeseries.count_packages_without_first_seen()
            logger.info(
                f"Backfill complete: {sum(inserted.values())} packages over {len(inserted)} weeks, "
                f"{missing_after} still missing"
            )
    except Exception as e:
        logger.error(f"First-seen backfill failed: {str(e)}")
        sys.exit(1)


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--dry-run", action="store_true", help="List the weeks without inserting")
    args = parser.parse_args()

    setup_logging()
    asyncio.run(backfill_first_seen(args.dry_run))
