"""
Unit tests for the package state loader
"""

import pytest
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError
from ingestion.loaders.postgres_loader import PostgresLoader
from schemas.records import PackageDownloadUpsert
from models import PackageDownload, PackageDetailsCatalogLeaf, PackageDependencyGroup
from core.exceptions import DatabaseConnectionError

CHECKED = datetime(2025, 1, 15, 8, 0, tzinfo=timezone.utc)


def upsert(package_id, count, icon_url=None, checked=CHECKED):
    return PackageDownloadUpsert(package_id=package_id, download_count=count, checked_utc=checked, icon_url=icon_url)


class TestPostgresLoader:
    """Test package state upserts and removal"""

    @pytest.mark.asyncio
    async def test_upsert_inserts_new_package(self, db_session):
        loader = PostgresLoader(db_session)

        assert await loader.upsert_package_downloads([upsert("Sentry", 100, "https://icons.test/s.png")]) == 1

        row = await db_session.get(PackageDownload, "sentry")
        assert row.package_id == "Sentry"
        assert row.latest_download_count == 100
        assert row.icon_url == "https://icons.test/s.png"

    @pytest.mark.asyncio
    async def test_upsert_overwrites_in_place(self, db_session):
        loader = PostgresLoader(db_session)
        await loader.upsert_package_downloads([upsert("sentry", 100, "https://icons.test/s.png")])
        await loader.upsert_package_downloads([upsert("Sentry", 250)])

        db_session.expire_all()
        rows = (await db_session.execute(select(PackageDownload))).scalars().all()
        assert len(rows) == 1
        assert rows[0].package_id == "Sentry"
        assert rows[0].latest_download_count == 250
        # Icon kept when the newer fetch has none
        assert rows[0].icon_url == "https://icons.test/s.png"

    @pytest.mark.asyncio
    async def test_upsert_collapses_duplicates_in_batch(self, db_session):
        loader = PostgresLoader(db_session)

        written = await loader.upsert_package_downloads([upsert("Polly", 1), upsert("POLLY", 2)])

        assert written == 1
        row = await db_session.get(PackageDownload, "polly")
        assert row.latest_download_count == 2
        assert row.package_id == "POLLY"

    @pytest.mark.asyncio
    async def test_upsert_empty_list(self):
        mock_session = AsyncMock()
        loader = PostgresLoader(mock_session)

        assert await loader.upsert_package_downloads([]) == 0
        mock_session.execute.assert_not_called()

    @pytest.mark.asyncio
    async def test_upsert_many_rows_in_one_statement(self, db_session):
        loader = PostgresLoader(db_session)
        items = [upsert(f"Package{i}", i) for i in range(7)]

        assert await loader.upsert_package_downloads(items) == 7
        count = (await db_session.execute(select(func.count()).select_from(PackageDownload))).scalar()
        assert count == 7

    @pytest.mark.asyncio
    async def test_connection_failure_is_retryable(self):
        mock_session = MagicMock()
        mock_session.get_bind.return_value.dialect.name = "postgresql"
        mock_session.execute = AsyncMock(side_effect=OperationalError("INSERT", {}, Exception("down")))
        mock_session.rollback = AsyncMock()
        loader = PostgresLoader(mock_session)

        with pytest.raises(DatabaseConnectionError):
            await loader.upsert_package_downloads([upsert("Sentry", 1)])
        mock_session.rollback.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_remove_package_deletes_catalog_and_state(self, db_session, add_catalog_leaf, add_package_download):
        await add_catalog_leaf("Gone", "1.0.0", frameworks=["net8.0"])
        await add_catalog_leaf("gone", "2.0.0", frameworks=["net8.0", "netstandard2.0"])
        await add_catalog_leaf("Kept", "1.0.0", frameworks=["net8.0"])
        await add_package_download("Gone")

        removed = await PostgresLoader(db_session).remove_package("GONE")

        assert removed == 2
        leaves = (await db_session.execute(select(PackageDetailsCatalogLeaf.package_id))).scalars().all()
        assert leaves == ["Kept"]
        groups = (await db_session.execute(select(func.count()).select_from(PackageDependencyGroup))).scalar()
        assert groups == 1
        assert await db_session.get(PackageDownload, "gone") is None

    @pytest.mark.asyncio
    async def test_remove_unknown_package(self, db_session):
        assert await PostgresLoader(db_session).remove_package("Nothing") == 0
