"""
Metadata enrichment for ranked packages.

Trending candidates come out of the time-series store keyed by the lowered
id. Before they are stored or served they get the canonical casing and
icon from the metadata store and a repository link from the catalog.
"""

import logging
from datetime import date
from typing import Dict, List, Optional, Sequence
from urllib.parse import urlparse

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from models import PackageDownload, PackageDetailsCatalogLeaf
from schemas.records import PackageMetadata, TrendingCandidate, TrendingSnapshotRow

logger = logging.getLogger(__name__)

SOURCE_HOSTS = {"github.com"}


def extract_github_url(url: Optional[str]) -> Optional[str]:
    """
    Reduce a project URL to its repository root on a recognized host.

    >>> extract_github_url("https://github.com/getsentry/sentry-dotnet/tree/main")
    'https://github.com/getsentry/sentry-dotnet'
    >>> extract_github_url("https://gitlab.com/owner/repo") is None
    True
    """
    if not url:
        return None

    try:
        parsed = urlparse(url.strip())
    except ValueError:
        return None

    if parsed.scheme not in ("http", "https") or (parsed.hostname or "").lower() not in SOURCE_HOSTS:
        return None

    segments = [segment for segment in parsed.path.split("/") if segment]
    if len(segments) < 2:
        return None

    owner, repo = segments[0], segments[1]
    if repo.lower().endswith(".git"):
        repo = repo[:-4]
    if not repo:
        return None
    return f"https://github.com/{owner}/{repo}"


async def load_package_metadata(
    session: AsyncSession,
    package_ids: Sequence[str]
) -> Dict[str, PackageMetadata]:
    if not package_ids:
        return {}
    result = await session.execute(
        select(
            PackageDownload.package_id_lowered,
            PackageDownload.package_id,
            PackageDownload.icon_url,
        ).where(PackageDownload.package_id_lowered.in_(list(package_ids)))
    )
    return {
        row.package_id_lowered: PackageMetadata(
            package_id_lowered=row.package_id_lowered,
            package_id=row.package_id,
            icon_url=row.icon_url,
        )
        for row in result
    }


async def load_project_urls(session: AsyncSession, package_ids: Sequence[str]) -> Dict[str, str]:
    if not package_ids:
        return {}
    result = await session.execute(
        select(PackageDetailsCatalogLeaf.package_id_lowered, PackageDetailsCatalogLeaf.project_url)
        .where(
            PackageDetailsCatalogLeaf.package_id_lowered.in_(list(package_ids)),
            PackageDetailsCatalogLeaf.project_url.isnot(None),
        )
        .order_by(PackageDetailsCatalogLeaf.package_id_lowered, PackageDetailsCatalogLeaf.created.desc())
    )
    urls: Dict[str, str] = {}
    for package_id_lowered, project_url in result:
        urls.setdefault(package_id_lowered, project_url)
    return urls


async def enrich_candidates(
    session: AsyncSession,
    week: date,
    candidates: Sequence[TrendingCandidate]
) -> List[TrendingSnapshotRow]:
    """Attach canonical casing, icon and repository URL to ranked packages"""
    package_ids = [candidate.package_id for candidate in candidates]
    metadata = await load_package_metadata(session, package_ids)
    project_urls = await load_project_urls(session, package_ids)

    rows = []
    for candidate in candidates:
        meta = metadata.get(candidate.package_id)
        rows.append(
            TrendingSnapshotRow(
                week=week,
                package_id=candidate.package_id,
                week_downloads=candidate.week_downloads,
                comparison_week_downloads=candidate.comparison_week_downloads,
                growth_rate=candidate.growth_rate,
                package_id_original=meta.package_id if meta else candidate.package_id,
                icon_url=meta.icon_url if meta else None,
                github_url=extract_github_url(project_urls.get(candidate.package_id)),
            )
        )

    missing = len(candidates) - sum(1 for c in candidates if c.package_id in metadata)
    if missing:
        logger.debug(f"{missing} trending packages have no metadata row")
    return rows
