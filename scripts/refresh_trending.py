"""
Rebuild the trending packages snapshot for the current data week.
"""

import asyncio
import sys
import os
import logging

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

from analytics.trending import TrendingSnapshotRefresher
from core.database import async_session_maker, engine
from core.exceptions import ConcurrentExecutionSkippedError
from core.logging import setup_logging
from core.redis import close_redis, get_redis
from storage.timeseries import TimeSeriesStore

logger = logging.getLogger(__name__)


async def refresh_trending():
    try:
        with TimeSeriesStore() as timeseries:
            refresher = TrendingSnapshotRefresher(async_session_maker, timeseries, get_redis())
            result = await refresher.refresh()
            logger.info(
                f"Trending snapshot for {result.week}: "
                f"first_seen_added={result.first_seen_added}, "
                f"candidates={result.candidates}, written={result.written}"
            )
    except ConcurrentExecutionSkippedError as e:
        logger.warning(str(e))
    except Exception as e:
        logger.error(f"Trending refresh failed: {str(e)}")
        sys.exit(1)
    finally:
        await close_redis()
        await engine.dispose()


if __name__ == "__main__":
    setup_logging()
    asyncio.run(refresh_trending())
