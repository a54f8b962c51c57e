"""
Cache-aside read caches in front of the snapshot queries.

Each view lives under one Redis key holding the full result. Requests with
different limits or filters are served from that superset, so the store is
queried once per TTL no matter how the dashboard slices the data.

Cache failures never fail a read: a broken get is a miss and a broken put
is logged and ignored.
"""

import logging
from typing import List, Optional, Sequence, TypeVar

import redis.asyncio as aioredis
from pydantic import TypeAdapter
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from analytics.enrichment import enrich_candidates
from core.config import settings
from core.dates import data_week
from core.exceptions import InputValidationError
from core.tracing import Tracer, default_tracer
from schemas.records import TfmAdoptionPoint, TfmFamilyGroup, TrendingPackages
from storage.timeseries import TimeSeriesStore

logger = logging.getLogger(__name__)

TRENDING_CACHE_KEY = "trending_packages"
TFM_ADOPTION_CACHE_KEY = "tfm_adoption"
TFM_AVAILABLE_CACHE_KEY = "tfm_available"

T = TypeVar("T")


class CacheAside:
    """Typed JSON get/put on one Redis key with failure isolation"""

    def __init__(
        self,
        redis: aioredis.Redis,
        ttl_seconds: Optional[int] = None,
        tracer: Optional[Tracer] = None
    ):
        self.redis = redis
        self.ttl_seconds = ttl_seconds or settings.cache_ttl_seconds
        self.tracer = tracer or default_tracer

    async def _get(self, key: str, adapter: TypeAdapter) -> Optional[T]:
        with self.tracer.span("cache.get", key) as span:
            try:
                raw = await self.redis.get(key)
            except Exception as e:
                logger.warning(f"Cache read failed for {key}, treating as miss: {e}")
                span.set_data("cache.hit", False)
                return None
            span.set_data("cache.hit", raw is not None)
            if raw is None:
                return None
            try:
                return adapter.validate_json(raw)
            except ValueError as e:
                logger.warning(f"Discarding unreadable cache entry {key}: {e}")
                return None

    async def _put(self, key: str, adapter: TypeAdapter, value: T) -> None:
        with self.tracer.span("cache.put", key, ttl=self.ttl_seconds):
            try:
                await self.redis.set(key, adapter.dump_json(value), ex=self.ttl_seconds)
            except Exception as e:
                logger.warning(f"Failed to cache {key}: {e}")


class TrendingPackagesCache(CacheAside):
    """
    Trending list served from the weekly snapshot.

    Falls back to a live ranking when no snapshot exists yet, and to an
    empty list for the previous week when even that finds nothing.
    """

    _adapter = TypeAdapter(TrendingPackages)

    def __init__(
        self,
        redis: aioredis.Redis,
        timeseries: TimeSeriesStore,
        session_factory: async_sessionmaker[AsyncSession],
        ttl_seconds: Optional[int] = None,
        max_results: Optional[int] = None,
        min_weekly_downloads: Optional[int] = None,
        max_age_months: Optional[int] = None,
        tracer: Optional[Tracer] = None
    ):
        super().__init__(redis, ttl_seconds, tracer)
        self.timeseries = timeseries
        self.session_factory = session_factory
        self.max_results = max_results or settings.TRENDING_CACHE_SIZE
        self.min_weekly_downloads = min_weekly_downloads or settings.TRENDING_MIN_WEEKLY_DOWNLOADS
        self.max_age_months = max_age_months or settings.TRENDING_MAX_PACKAGE_AGE_MONTHS

    async def get_trending_packages(self, limit: int) -> TrendingPackages:
        if limit < 1 or limit > self.max_results:
            raise InputValidationError(
                f"limit must be between 1 and {self.max_results}",
                context={"limit": limit}
            )

        cached = await self._get(TRENDING_CACHE_KEY, self._adapter)
        if cached is not None:
            return cached.take(limit)

        fresh = await self._fetch()
        if fresh.packages:
            await self._put(TRENDING_CACHE_KEY, self._adapter, fresh)
        return fresh.take(limit)

    async def _fetch(self) -> TrendingPackages:
        snapshot = await self.timeseries.get_trending_snapshot(self.max_results)
        if snapshot is not None and snapshot.packages:
            return snapshot

        logger.warning("No trending packages in snapshot, falling back to live ranking")
        week = data_week()
        candidates = await self.timeseries.compute_trending(
            min_weekly_downloads=self.min_weekly_downloads,
            max_age_months=self.max_age_months,
            limit=self.max_results,
        )
        if not candidates:
            return TrendingPackages(week=week, packages=[])

        async with self.session_factory() as session:
            rows = await enrich_candidates(session, week, candidates)
        return TrendingPackages(week=week, packages=rows)


class TfmAdoptionCache(CacheAside):
    """Adoption series and available frameworks, filtered in memory"""

    _points_adapter = TypeAdapter(List[TfmAdoptionPoint])
    _groups_adapter = TypeAdapter(List[TfmFamilyGroup])

    def __init__(
        self,
        redis: aioredis.Redis,
        timeseries: TimeSeriesStore,
        ttl_seconds: Optional[int] = None,
        tracer: Optional[Tracer] = None
    ):
        super().__init__(redis, ttl_seconds, tracer)
        self.timeseries = timeseries

    async def get_available_tfms(self) -> List[TfmFamilyGroup]:
        cached = await self._get(TFM_AVAILABLE_CACHE_KEY, self._groups_adapter)
        if cached is not None:
            return cached

        groups = await self.timeseries.get_available_tfms()
        if groups:
            await self._put(TFM_AVAILABLE_CACHE_KEY, self._groups_adapter, groups)
        return groups

    async def get_adoption(
        self,
        tfms: Optional[Sequence[str]] = None,
        families: Optional[Sequence[str]] = None
    ) -> List[TfmAdoptionPoint]:
        points = await self._get(TFM_ADOPTION_CACHE_KEY, self._points_adapter)
        if points is None:
            points = await self.timeseries.get_tfm_adoption()
            if points:
                await self._put(TFM_ADOPTION_CACHE_KEY, self._points_adapter, points)

        wanted_tfms = {t.strip().lower() for t in tfms or [] if t.strip()}
        wanted_families = {f.strip().lower() for f in families or [] if f.strip()}
        if not wanted_tfms and not wanted_families:
            return points

        return [
            p for p in points
            if p.tfm.lower() in wanted_tfms or p.family.lower() in wanted_families
        ]
