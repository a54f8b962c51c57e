"""
Target framework adoption snapshot job.

For every package, the month it first shipped a build for a framework
counts as that package adopting it. The job turns the catalog's
dependency groups into monthly new and cumulative package counts per
framework and replaces the adoption snapshot with the result.
"""

import logging
from collections import Counter, defaultdict
from datetime import date, datetime
from typing import AsyncIterator, Dict, Iterable, List, Optional, Tuple

import redis.asyncio as aioredis
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from analytics.cache import TFM_ADOPTION_CACHE_KEY, TFM_AVAILABLE_CACHE_KEY
from analytics.tfm import normalize_tfm
from core.dates import first_of_month
from core.exceptions import BatchJobError, ConcurrentExecutionSkippedError
from core.locks import JobLock
from core.tracing import Tracer, default_tracer
from ingestion.runner import JobRunRecorder
from models import PackageDependencyGroup, PackageDetailsCatalogLeaf
from models.base import JobName
from schemas.records import TfmAdoptionPoint
from storage.timeseries import TimeSeriesStore

logger = logging.getLogger(__name__)

FrameworkRow = Tuple[str, Optional[str], Optional[datetime]]


async def iter_framework_rows(session: AsyncSession) -> AsyncIterator[FrameworkRow]:
    """(package id lowered, raw target framework, version created) for every dependency group"""
    stmt = (
        select(
            PackageDetailsCatalogLeaf.package_id_lowered,
            PackageDependencyGroup.target_framework,
            PackageDetailsCatalogLeaf.created,
        )
        .join(PackageDependencyGroup, PackageDependencyGroup.catalog_leaf_id == PackageDetailsCatalogLeaf.id)
        .where(
            PackageDependencyGroup.target_framework.isnot(None),
            PackageDetailsCatalogLeaf.created.isnot(None),
        )
    )
    result = await session.stream(stmt)
    async for row in result:
        yield row[0], row[1], row[2]


def compute_adoption(rows: Iterable[FrameworkRow]) -> List[TfmAdoptionPoint]:
    """
    Monthly adoption counts per framework.

    A package is counted once per framework, in the month of its earliest
    version targeting it.
    """
    earliest: Dict[Tuple[str, str, str], date] = {}
    for package_id, raw_tfm, created in rows:
        tfm = normalize_tfm(raw_tfm)
        if tfm is None or created is None:
            continue
        key = (package_id, tfm.short_name, tfm.family)
        month = first_of_month(created)
        if key not in earliest or month < earliest[key]:
            earliest[key] = month

    monthly: Dict[Tuple[str, str], Counter] = defaultdict(Counter)
    for (_, short_name, family), month in earliest.items():
        monthly[(short_name, family)][month] += 1

    points: List[TfmAdoptionPoint] = []
    for (short_name, family), counts in sorted(monthly.items()):
        cumulative = 0
        for month in sorted(counts):
            cumulative += counts[month]
            points.append(
                TfmAdoptionPoint(
                    month=month,
                    tfm=short_name,
                    family=family,
                    new_package_count=counts[month],
                    cumulative_package_count=cumulative,
                )
            )
    return points


class TfmAdoptionRefresher:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        timeseries: TimeSeriesStore,
        redis: aioredis.Redis,
        tracer: Optional[Tracer] = None
    ):
        self.session_factory = session_factory
        self.timeseries = timeseries
        self.redis = redis
        self.tracer = tracer or default_tracer

    async def refresh(self) -> int:
        """
        Recompute and replace the adoption snapshot.

        Returns:
            Number of (month, framework) points written
        """
        async with JobRunRecorder(self.session_factory, JobName.TFM_ADOPTION) as run:
            async with JobLock(self.redis, JobName.TFM_ADOPTION.value):
                try:
                    with self.tracer.span("job.tfm_adoption", "compute") as span:
                        async with self.session_factory() as session:
                            rows = [row async for row in iter_framework_rows(session)]
                        points = compute_adoption(rows)
                        span.set_data("rows", len(rows))

                    with self.tracer.span("job.tfm_adoption", "write"):
                        written = await self.timeseries.replace_tfm_adoption(points)
                except (BatchJobError, ConcurrentExecutionSkippedError):
                    raise
                except Exception as e:
                    raise BatchJobError("Framework adoption refresh failed", original_exception=e)

            run.record(processed=written, dependency_groups=len(rows))

        logger.info(f"Framework adoption snapshot replaced with {written} points from {len(rows)} dependency groups")
        try:
            await self.redis.delete(TFM_ADOPTION_CACHE_KEY, TFM_AVAILABLE_CACHE_KEY)
        except Exception as e:
            logger.warning(f"Failed to invalidate framework caches: {e}")
        return written
