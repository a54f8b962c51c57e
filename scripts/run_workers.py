"""
Run download workers in the foreground until interrupted.

Use --drain to process what is queued and exit. Do not run this next to an
API process that has workers enabled: both would open the same DuckDB file.
"""

import argparse
import asyncio
import sys
import os
import logging

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

from core.config import settings
from core.database import async_session_maker, engine
from core.logging import setup_logging
from core.redis import close_redis, get_redis
from ingestion.extractors.registry_client import RegistryClient
from ingestion.queue import WorkQueue
from ingestion.worker import DownloadWorkerPool
from storage.timeseries import TimeSeriesStore

logger = logging.getLogger(__name__)


async def run_workers(drain: bool, worker_count: int):
    queue = WorkQueue(get_redis())

    try:
        with TimeSeriesStore() as timeseries:
            async with RegistryClient() as registry:
                pool = DownloadWorkerPool(
                    queue, registry, async_session_maker, timeseries, worker_count=worker_count
                )
                if drain:
                    requeued = await queue.requeue_expired()
                    handled = await pool.drain()
                    logger.info(f"Drained queue: handled={handled}, requeued={requeued}")
                    return

                pool.start()
                try:
                    while True:
                        await asyncio.sleep(settings.QUEUE_SWEEP_INTERVAL_SECONDS)
                        await queue.requeue_expired()
                finally:
                    await pool.stop()
    finally:
        await close_redis()
        await engine.dispose()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Run package download workers")
    parser.add_argument("--drain", action="store_true", help="Process queued messages and exit")
    parser.add_argument("--workers", type=int, default=settings.WORKER_COUNT)
    args = parser.parse_args()

    setup_logging()
    try:
        asyncio.run(run_workers(args.drain, args.workers))
    except KeyboardInterrupt:
        logger.info("Interrupted, workers stopped")
