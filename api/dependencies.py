"""
FastAPI dependencies for stores, caches and pipeline components
"""

from typing import AsyncGenerator, Optional
from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession
import redis.asyncio as aioredis

from core.database import async_session_maker
from core.redis import get_redis
from analytics.cache import TfmAdoptionCache, TrendingPackagesCache
from ingestion.queue import WorkQueue
from ingestion.worker import DownloadWorkerPool
from storage.timeseries import TimeSeriesStore


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Metadata store session scoped to one request"""
    async with async_session_maker() as session:
        yield session


def get_redis_client() -> aioredis.Redis:
    return get_redis()


def get_timeseries(request: Request) -> TimeSeriesStore:
    return request.app.state.timeseries


def get_queue(redis: aioredis.Redis = Depends(get_redis_client)) -> WorkQueue:
    return WorkQueue(redis)


def get_worker_pool(request: Request) -> Optional[DownloadWorkerPool]:
    return getattr(request.app.state, "worker_pool", None)


def get_trending_cache(
    redis: aioredis.Redis = Depends(get_redis_client),
    timeseries: TimeSeriesStore = Depends(get_timeseries)
) -> TrendingPackagesCache:
    return TrendingPackagesCache(redis, timeseries, async_session_maker)


def get_tfm_cache(
    redis: aioredis.Redis = Depends(get_redis_client),
    timeseries: TimeSeriesStore = Depends(get_timeseries)
) -> TfmAdoptionCache:
    return TfmAdoptionCache(redis, timeseries)
