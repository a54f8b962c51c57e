"""
Write package download state to the metadata store with upsert logic (idempotency)
"""

from typing import Dict, Sequence
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import delete, func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from models import PackageDownload, PackageDetailsCatalogLeaf, PackageDependencyGroup, PackageDependency
from schemas.records import PackageDownloadUpsert
from core.exceptions import DatabaseConnectionError, DatabaseError
import logging

logger = logging.getLogger(__name__)


class PostgresLoader:
    """
    Load package state into the metadata store with idempotent upserts.
    
    Ensures:
    - One row per package, keyed by the lowered id
    - The latest fetch overwrites count, check time and casing
    - An icon is never cleared by a fetch that returned none
    """
    
    def __init__(self, db_session: AsyncSession):
        self.db = db_session
    
    def _insert(self):
        dialect = self.db.get_bind().dialect.name
        return sqlite_insert if dialect == "sqlite" else pg_insert
    
    async def upsert_package_downloads(
        self,
        items: Sequence[PackageDownloadUpsert],
        commit: bool = True
    ) -> int:
        """
        Upsert package state rows (INSERT ... ON CONFLICT (package_id_lowered) DO UPDATE).
        
        Args:
            items: New states; later items win over earlier ones for the same package
            commit: Commit the session afterwards
            
        Returns:
            Number of rows written
        """
        if not items:
            return 0
        
        rows: Dict[str, dict] = {}
        for item in items:
            rows[item.package_id_lowered] = {
                "package_id": item.package_id,
                "package_id_lowered": item.package_id_lowered,
                "latest_download_count": item.download_count,
                "latest_download_count_checked_utc": item.checked_utc,
                "icon_url": item.icon_url,
            }
        
        stmt = self._insert()(PackageDownload).values(list(rows.values()))
        stmt = stmt.on_conflict_do_update(
            index_elements=["package_id_lowered"],
            set_={
                "package_id": stmt.excluded.package_id,
                "latest_download_count": stmt.excluded.latest_download_count,
                "latest_download_count_checked_utc": stmt.excluded.latest_download_count_checked_utc,
                "icon_url": func.coalesce(stmt.excluded.icon_url, PackageDownload.icon_url),
            }
        )
        
        try:
            await self.db.execute(stmt)
            if commit:
                await self.db.commit()
        except OperationalError as e:
            await self.db.rollback()
            raise DatabaseConnectionError(
                "Metadata store unavailable during upsert",
                context={"operation": "UPSERT", "table_name": "package_downloads", "rows": len(rows)},
                original_exception=e
            )
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise DatabaseError(
                "Package download upsert failed",
                context={"operation": "UPSERT", "table_name": "package_downloads", "rows": len(rows)},
                original_exception=e
            )
        
        logger.debug(f"Upserted {len(rows)} package download rows")
        return len(rows)
    
    async def remove_package(self, package_id: str, commit: bool = True) -> int:
        """
        Delete every catalog entry and the download state of a package the
        registry no longer knows.
        
        Returns:
            Number of catalog entries removed
        """
        lowered = package_id.lower()
        leaf_ids = select(PackageDetailsCatalogLeaf.id).where(
            PackageDetailsCatalogLeaf.package_id_lowered == lowered
        )
        group_ids = select(PackageDependencyGroup.id).where(
            PackageDependencyGroup.catalog_leaf_id.in_(leaf_ids)
        )
        
        try:
            await self.db.execute(
                delete(PackageDependency).where(PackageDependency.dependency_group_id.in_(group_ids))
            )
            await self.db.execute(
                delete(PackageDependencyGroup).where(PackageDependencyGroup.catalog_leaf_id.in_(leaf_ids))
            )
            result = await self.db.execute(
                delete(PackageDetailsCatalogLeaf).where(PackageDetailsCatalogLeaf.package_id_lowered == lowered)
            )
            await self.db.execute(
                delete(PackageDownload).where(PackageDownload.package_id_lowered == lowered)
            )
            if commit:
                await self.db.commit()
        except OperationalError as e:
            await self.db.rollback()
            raise DatabaseConnectionError(
                "Metadata store unavailable during catalog removal",
                context={"operation": "DELETE", "package_id": package_id},
                original_exception=e
            )
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise DatabaseError(
                "Catalog removal failed",
                context={"operation": "DELETE", "package_id": package_id},
                original_exception=e
            )
        
        removed = result.rowcount or 0
        if removed == 0:
            logger.warning(f"Package {package_id} not found in the registry and had no catalog entries")
        else:
            logger.info(f"Removed {removed} catalog entries for {package_id}, which no longer exists")
        return removed
