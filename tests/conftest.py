"""
Pytest configuration and fixtures
"""

import pytest
import pytest_asyncio
from datetime import date, datetime, timezone
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import StaticPool
from fakeredis import FakeAsyncRedis
from typing import AsyncGenerator
import os

import models  # noqa: F401
from models.base import Base
from models import PackageDownload, PackageDetailsCatalogLeaf, PackageDependencyGroup
from storage.timeseries import TimeSeriesStore

# Test database URL
TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL", "sqlite+aiosqlite:///:memory:")

# Fixed "today" used across tests: a Wednesday
TODAY = date(2025, 1, 15)


@pytest_asyncio.fixture(scope="function")
async def test_engine():
    """Create test database engine"""
    if TEST_DATABASE_URL.startswith("sqlite"):
        engine = create_async_engine(
            TEST_DATABASE_URL,
            echo=False,
            poolclass=StaticPool,  # One shared in-memory database
            connect_args={"check_same_thread": False},
        )
    else:
        engine = create_async_engine(TEST_DATABASE_URL, echo=False)

    # Create all tables
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    # Drop all tables after test
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create database session for tests"""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest_asyncio.fixture(scope="function")
async def redis_client():
    client = FakeAsyncRedis(decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()


@pytest.fixture
def timeseries():
    """In-memory time-series store"""
    with TimeSeriesStore(":memory:") as store:
        yield store


@pytest.fixture
def add_catalog_leaf(db_session):
    """Insert a catalog leaf, optionally with target frameworks"""

    async def _add(
        package_id: str,
        version: str = "1.0.0",
        created: datetime = datetime(2024, 6, 1, tzinfo=timezone.utc),
        project_url: str = None,
        frameworks=(),
    ) -> PackageDetailsCatalogLeaf:
        leaf = PackageDetailsCatalogLeaf(
            package_id=package_id,
            package_id_lowered=package_id.lower(),
            package_version=version,
            listed=True,
            created=created,
            project_url=project_url,
        )
        leaf.dependency_groups = [PackageDependencyGroup(target_framework=tfm) for tfm in frameworks]
        db_session.add(leaf)
        await db_session.commit()
        return leaf

    return _add


@pytest.fixture
def add_package_download(db_session):
    """Insert a package state row"""

    async def _add(
        package_id: str,
        count: int = 100,
        checked_utc: datetime = datetime(2025, 1, 14, 6, 0, tzinfo=timezone.utc),
        icon_url: str = None,
    ) -> PackageDownload:
        row = PackageDownload(
            package_id=package_id,
            package_id_lowered=package_id.lower(),
            latest_download_count=count,
            latest_download_count_checked_utc=checked_utc,
            icon_url=icon_url,
        )
        db_session.add(row)
        await db_session.commit()
        return row

    return _add
