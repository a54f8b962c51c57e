"""
Select every package due for a download refresh and publish it to the queue.

Run once a day, or let the API process schedule it.
"""

import asyncio
import sys
import os
import logging

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

from core.database import async_session_maker, engine
from core.exceptions import ConcurrentExecutionSkippedError
from core.logging import setup_logging
from core.redis import close_redis, get_redis
from ingestion.publisher import DailyDownloadPublisher
from ingestion.queue import WorkQueue

logger = logging.getLogger(__name__)


async def run_publisher():
    redis = get_redis()
    publisher = DailyDownloadPublisher(async_session_maker, WorkQueue(redis), redis)

    try:
        result = await publisher.publish()
        logger.info(
            f"Publish completed: selected={result.selected}, "
            f"published={result.published}, failed={result.failed}"
        )
    except ConcurrentExecutionSkippedError as e:
        logger.warning(str(e))
    except Exception as e:
        logger.error(f"Publish failed: {str(e)}")
        sys.exit(1)
    finally:
        await close_redis()
        await engine.dispose()


if __name__ == "__main__":
    setup_logging()
    asyncio.run(run_publisher())
