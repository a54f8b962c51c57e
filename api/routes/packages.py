"""
Package search, download history and trending endpoints
"""

from fastapi import APIRouter, Depends, HTTPException, Path, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from typing import List
import uuid
import logging

from api.dependencies import get_db, get_timeseries, get_trending_cache
from analytics.cache import TrendingPackagesCache
from core.config import settings
from models import PackageDownload
from schemas.api import (
    DEFAULT_ICON_URL,
    PackageHistoryResponse,
    PackageSearchItem,
    TrendingPackageItem,
    TrendingPackagesResponse,
    WeeklyDownloadItem,
)
from storage.timeseries import TimeSeriesStore

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/package", tags=["Packages"])

SEARCH_RESULT_LIMIT = 20


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", f"req_{uuid.uuid4().hex[:12]}")


@router.get("/search", response_model=List[PackageSearchItem])
async def search_packages(
    request: Request,
    q: str = Query(..., min_length=1, max_length=128, description="Package id prefix, any casing"),
    db: AsyncSession = Depends(get_db)
):
    """
    Packages whose id starts with ``q``, most downloaded first.
    """
    term = q.strip().lower()
    logger.info(f"[{_request_id(request)}] GET /api/package/search - q={term}")
    if not term:
        return []

    result = await db.execute(
        select(PackageDownload)
        .where(
            PackageDownload.package_id_lowered.startswith(term, autoescape=True),
            PackageDownload.latest_download_count.isnot(None),
        )
        .order_by(PackageDownload.latest_download_count.desc())
        .limit(SEARCH_RESULT_LIMIT)
    )

    return [
        PackageSearchItem(
            package_id=package.package_id,
            download_count=package.latest_download_count,
            icon_url=package.icon_url or DEFAULT_ICON_URL,
        )
        for package in result.scalars().all()
    ]


@router.get("/history/{package_id}", response_model=PackageHistoryResponse)
async def get_download_history(
    request: Request,
    package_id: str = Path(..., min_length=1, max_length=128),
    months: int = Query(3, ge=1, le=240, description="How many months of history"),
    db: AsyncSession = Depends(get_db),
    timeseries: TimeSeriesStore = Depends(get_timeseries)
):
    """
    Weekly average downloads of one package, oldest week first.
    """
    lowered = package_id.strip().lower()
    logger.info(f"[{_request_id(request)}] GET /api/package/history/{lowered} - months={months}")

    package = (
        await db.execute(select(PackageDownload).where(PackageDownload.package_id_lowered == lowered))
    ).scalar_one_or_none()
    if package is None:
        raise HTTPException(status_code=404, detail=f"Package '{package_id}' not found")

    weeks = await timeseries.get_weekly_downloads(lowered, months)
    return PackageHistoryResponse(
        id=package.package_id,
        downloads=[WeeklyDownloadItem(week=w.week, count=w.download_count) for w in weeks],
    )


@router.get("/trending", response_model=TrendingPackagesResponse)
async def get_trending_packages(
    request: Request,
    limit: int = Query(10, ge=1, le=settings.TRENDING_CACHE_SIZE, description="Number of packages"),
    cache: TrendingPackagesCache = Depends(get_trending_cache)
):
    """
    Fastest growing packages of the last completed week.
    """
    logger.info(f"[{_request_id(request)}] GET /api/package/trending - limit={limit}")
    trending = await cache.get_trending_packages(limit)

    return TrendingPackagesResponse(
        week=trending.week,
        packages=[
            TrendingPackageItem(
                package_id=p.package_id_original,
                download_count=p.week_downloads,
                growth_rate=p.growth_rate,
                icon_url=p.icon_url or DEFAULT_ICON_URL,
                git_hub_url=p.github_url,
            )
            for p in trending.packages
        ],
    )
