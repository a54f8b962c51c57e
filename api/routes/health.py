"""
Health check endpoint with store connectivity and job status
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from typing import Optional
import redis.asyncio as aioredis
import logging

from api.dependencies import get_db, get_queue, get_redis_client, get_timeseries, get_worker_pool
from core.database import check_database
from core.redis import check_redis
from ingestion.queue import WorkQueue
from ingestion.worker import DownloadWorkerPool
from models import JobRun
from models.base import JobName
from schemas.api import HealthCheckResponse, JobRunInfo
from storage.timeseries import TimeSeriesStore

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Health"])


@router.get("/health", response_model=HealthCheckResponse)
async def health_check(
    db: AsyncSession = Depends(get_db),
    redis: aioredis.Redis = Depends(get_redis_client),
    timeseries: TimeSeriesStore = Depends(get_timeseries),
    queue: WorkQueue = Depends(get_queue),
    worker_pool: Optional[DownloadWorkerPool] = Depends(get_worker_pool)
):
    """
    Health check endpoint.
    
    Returns:
    - Metadata store, Redis and time-series store connectivity
    - Queue depth (pending, processing, dead-lettered)
    - Last run of every scheduled job
    """
    db_connected = await check_database(db)
    redis_connected = await check_redis(redis)
    timeseries_connected = await timeseries.ping()
    
    queue_stats = {}
    if redis_connected:
        try:
            queue_stats = await queue.stats()
        except Exception as e:
            logger.error(f"Failed to read queue stats: {str(e)}")
    
    last_runs = []
    if db_connected:
        try:
            for job_name in JobName:
                result = await db.execute(
                    select(JobRun)
                    .where(JobRun.job_name == job_name)
                    .order_by(JobRun.started_at.desc())
                    .limit(1)
                )
                run = result.scalar_one_or_none()
                if run is not None:
                    last_runs.append(JobRunInfo.model_validate(run))
        except Exception as e:
            logger.error(f"Failed to fetch job runs: {str(e)}")
    
    return HealthCheckResponse(
        database_connected=db_connected,
        redis_connected=redis_connected,
        timeseries_connected=timeseries_connected,
        queue=queue_stats,
        workers_running=worker_pool.running if worker_pool else 0,
        last_job_runs=last_runs,
    )
