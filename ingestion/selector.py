"""
Selection of packages whose download count has not been checked today.

The catalog can be orders of magnitude larger than the download state
table, so the two halves are queried separately and unioned instead of
outer-joining the catalog:

1. Stale: state rows checked before today (indexed predicate on the check time)
2. Never seen: catalog ids with no state row at all
"""

import logging
from datetime import date
from typing import AsyncIterator, Optional, Set

from sqlalchemy import exists, select, union
from sqlalchemy.ext.asyncio import AsyncSession

from core.dates import utc_midnight, utc_today
from models import PackageDownload, PackageDetailsCatalogLeaf

logger = logging.getLogger(__name__)


def unprocessed_packages_query(today: date):
    stale = select(PackageDownload.package_id.label("package_id")).where(
        PackageDownload.latest_download_count_checked_utc < utc_midnight(today)
    )
    never_seen = (
        select(PackageDetailsCatalogLeaf.package_id.label("package_id"))
        .where(
            ~exists().where(
                PackageDownload.package_id_lowered == PackageDetailsCatalogLeaf.package_id_lowered
            )
        )
        .distinct()
    )
    return union(stale, never_seen)


async def iter_unprocessed_package_ids(
    session: AsyncSession,
    today: Optional[date] = None
) -> AsyncIterator[str]:
    """
    Stream distinct package ids that still need a download check on ``today``.
    
    Ids that differ only in casing are yielded once. Pure read; safe to
    call repeatedly.
    """
    today = today or utc_today()
    seen: Set[str] = set()
    
    result = await session.stream(unprocessed_packages_query(today))
    async for (package_id,) in result:
        key = package_id.lower()
        if key in seen:
            continue
        seen.add(key)
        yield package_id
    
    logger.info(f"Selected {len(seen)} unprocessed packages for {today}")
