import logging
from typing import Optional
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from core.config import settings
from core.exceptions import ConcurrentExecutionSkippedError
from ingestion.publisher import DailyDownloadPublisher
from ingestion.queue import WorkQueue
from analytics.trending import TrendingSnapshotRefresher
from analytics.adoption import TfmAdoptionRefresher
from storage.timeseries import TimeSeriesStore

logger = logging.getLogger(__name__)


class PipelineScheduler:
    """
    Cron schedule for the batch side of the pipeline (all times UTC):
    
    - daily publish of unprocessed packages
    - weekly trending snapshot, after the week's last day was fetched
    - weekly framework adoption snapshot
    - lease sweep returning messages of dead workers to the queue
    - daily compaction of superseded facts
    """
    
    def __init__(
        self,
        publisher: DailyDownloadPublisher,
        trending: TrendingSnapshotRefresher,
        adoption: TfmAdoptionRefresher,
        queue: WorkQueue,
        timeseries: TimeSeriesStore,
        scheduler: Optional[AsyncIOScheduler] = None
    ):
        self.publisher = publisher
        self.trending = trending
        self.adoption = adoption
        self.queue = queue
        self.timeseries = timeseries
        self.scheduler = scheduler or AsyncIOScheduler(timezone="UTC")
    
    async def run_daily_publish(self):
        """Job to enqueue today's unprocessed packages"""
        logger.info("Scheduler: Starting daily download publish")
        try:
            await self.publisher.publish()
        except ConcurrentExecutionSkippedError as e:
            logger.info(f"Scheduler: Daily publish skipped - {e.message}")
        except Exception as e:
            logger.error(f"Scheduler: Daily publish failed - {e}")
    
    async def run_trending_refresh(self):
        logger.info("Scheduler: Starting trending snapshot refresh")
        try:
            await self.trending.refresh()
        except ConcurrentExecutionSkippedError as e:
            logger.info(f"Scheduler: Trending refresh skipped - {e.message}")
        except Exception as e:
            logger.error(f"Scheduler: Trending refresh failed - {e}")
    
    async def run_adoption_refresh(self):
        logger.info("Scheduler: Starting framework adoption refresh")
        try:
            await self.adoption.refresh()
        except ConcurrentExecutionSkippedError as e:
            logger.info(f"Scheduler: Adoption refresh skipped - {e.message}")
        except Exception as e:
            logger.error(f"Scheduler: Adoption refresh failed - {e}")
    
    async def run_queue_sweep(self):
        try:
            await self.queue.requeue_expired()
        except Exception as e:
            logger.error(f"Scheduler: Queue sweep failed - {e}")
    
    async def run_compaction(self):
        try:
            await self.timeseries.optimize()
        except Exception as e:
            logger.error(f"Scheduler: Time-series compaction failed - {e}")
    
    def register_jobs(self):
        common = {"replace_existing": True, "max_instances": 1, "coalesce": True}
        
        self.scheduler.add_job(
            self.run_daily_publish,
            trigger=CronTrigger(hour=settings.DAILY_PUBLISH_HOUR_UTC, minute=0, timezone="UTC"),
            id="daily_download_publish",
            **common
        )
        self.scheduler.add_job(
            self.run_trending_refresh,
            trigger=CronTrigger(day_of_week="mon", hour=settings.TRENDING_REFRESH_HOUR_UTC, minute=0, timezone="UTC"),
            id="trending_snapshot_refresh",
            **common
        )
        self.scheduler.add_job(
            self.run_adoption_refresh,
            trigger=CronTrigger(day_of_week="mon", hour=settings.TFM_REFRESH_HOUR_UTC, minute=0, timezone="UTC"),
            id="tfm_adoption_refresh",
            **common
        )
        self.scheduler.add_job(
            self.run_queue_sweep,
            trigger=IntervalTrigger(seconds=settings.QUEUE_SWEEP_INTERVAL_SECONDS),
            id="queue_lease_sweep",
            **common
        )
        self.scheduler.add_job(
            self.run_compaction,
            trigger=CronTrigger(hour=0, minute=30, timezone="UTC"),
            id="timeseries_compaction",
            **common
        )
    
    def start(self):
        """Start the scheduler"""
        self.register_jobs()
        self.scheduler.start()
        logger.info("Pipeline scheduler started")
    
    def stop(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        logger.info("Pipeline scheduler stopped")
