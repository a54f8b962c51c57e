"""
Weekly trending snapshot job.

Phases, in order:

1. FIRST SEEN - record the data week for packages seen for the first time
2. RANK       - compare the last completed week with the week before
3. ENRICH     - canonical casing, icon and repository URL from the metadata store
4. WRITE      - replace the snapshot rows for the data week

The job holds a lock for its whole run so two refreshes can never
interleave their delete and insert for the same week. When ranking yields
nothing, the previous snapshot is left in place and keeps serving reads.
"""

import logging
from dataclasses import dataclass
from datetime import date
from typing import Optional

import redis.asyncio as aioredis
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from analytics.cache import TRENDING_CACHE_KEY
from analytics.enrichment import enrich_candidates
from core.config import settings
from core.dates import data_week, utc_today
from core.exceptions import BatchJobError, ConcurrentExecutionSkippedError
from core.locks import JobLock
from core.tracing import Tracer, default_tracer
from ingestion.runner import JobRunRecorder
from models.base import JobName
from storage.timeseries import TimeSeriesStore

logger = logging.getLogger(__name__)


@dataclass
class TrendingRefreshResult:
    week: date
    first_seen_added: int = 0
    candidates: int = 0
    written: int = 0


class TrendingSnapshotRefresher:
    """
    Usage:
        refresher = TrendingSnapshotRefresher(async_session_maker, store, redis)
        result = await refresher.refresh()
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        timeseries: TimeSeriesStore,
        redis: aioredis.Redis,
        min_weekly_downloads: Optional[int] = None,
        max_age_months: Optional[int] = None,
        snapshot_size: Optional[int] = None,
        tracer: Optional[Tracer] = None
    ):
        self.session_factory = session_factory
        self.timeseries = timeseries
        self.redis = redis
        self.min_weekly_downloads = min_weekly_downloads or settings.TRENDING_MIN_WEEKLY_DOWNLOADS
        self.max_age_months = max_age_months or settings.TRENDING_MAX_PACKAGE_AGE_MONTHS
        self.snapshot_size = snapshot_size or settings.TRENDING_SNAPSHOT_SIZE
        self.tracer = tracer or default_tracer

    async def refresh(self, today: Optional[date] = None) -> TrendingRefreshResult:
        today = today or utc_today()
        result = TrendingRefreshResult(week=data_week(today))

        async with JobRunRecorder(self.session_factory, JobName.TRENDING_SNAPSHOT) as run:
            async with JobLock(self.redis, JobName.TRENDING_SNAPSHOT.value):
                try:
                    await self._refresh(today, result)
                except (BatchJobError, ConcurrentExecutionSkippedError):
                    raise
                except Exception as e:
                    raise BatchJobError(
                        "Trending snapshot refresh failed",
                        context={"week": str(result.week)},
                        original_exception=e
                    )

            run.record(
                processed=result.written,
                week=result.week,
                candidates=result.candidates,
                first_seen_added=result.first_seen_added,
            )

        if result.written:
            await self._invalidate_cache()
        return result

    async def _refresh(self, today: date, result: TrendingRefreshResult) -> None:
        # --------------------------------------------------
        # PHASE 1: FIRST SEEN
        # --------------------------------------------------
        with self.tracer.span("job.trending", "update_first_seen"):
            result.first_seen_added = await self.timeseries.update_package_first_seen(today)

        # --------------------------------------------------
        # PHASE 2: RANK
        # --------------------------------------------------
        with self.tracer.span("job.trending", "compute_trending") as span:
            candidates = await self.timeseries.compute_trending(
                min_weekly_downloads=self.min_weekly_downloads,
                max_age_months=self.max_age_months,
                limit=self.snapshot_size,
                today=today,
            )
            result.candidates = len(candidates)
            span.set_data("candidates", len(candidates))

        if not candidates:
            logger.warning(
                f"No trending packages for week {result.week}; keeping the previous snapshot"
            )
            return

        # --------------------------------------------------
        # PHASE 3: ENRICH
        # --------------------------------------------------
        with self.tracer.span("job.trending", "enrich"):
            async with self.session_factory() as session:
                rows = await enrich_candidates(session, result.week, candidates)

        # --------------------------------------------------
        # PHASE 4: WRITE
        # --------------------------------------------------
        with self.tracer.span("job.trending", "write_snapshot"):
            result.written = await self.timeseries.write_trending_snapshot(result.week, rows)

        logger.info(
            f"Trending snapshot for week {result.week}: {result.written} packages "
            f"({result.first_seen_added} newly tracked)"
        )

    async def _invalidate_cache(self) -> None:
        try:
            await self.redis.delete(TRENDING_CACHE_KEY)
        except Exception as e:
            logger.warning(f"Failed to invalidate trending cache: {e}")
