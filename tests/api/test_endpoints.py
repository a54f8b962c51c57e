"""
API endpoint tests
"""

import pytest
import pytest_asyncio
from datetime import datetime, timedelta, timezone
from httpx import ASGITransport, AsyncClient
from api.main import app
from api.dependencies import get_db, get_redis_client, get_tfm_cache, get_timeseries, get_trending_cache
from analytics.cache import TfmAdoptionCache, TrendingPackagesCache
from core.dates import data_week, monday_of, utc_today
from models import JobRun
from models.base import JobName, JobStatus
from schemas.api import DEFAULT_ICON_URL
from schemas.records import DailyDownloadFact, TfmAdoptionPoint, TrendingSnapshotRow


@pytest_asyncio.fixture
async def client(db_session, session_factory, redis_client, timeseries):
    """Create test client with store overrides"""

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_redis_client] = lambda: redis_client
    app.dependency_overrides[get_timeseries] = lambda: timeseries
    app.dependency_overrides[get_trending_cache] = lambda: TrendingPackagesCache(
        redis_client, timeseries, session_factory, max_results=100
    )
    app.dependency_overrides[get_tfm_cache] = lambda: TfmAdoptionCache(redis_client, timeseries)

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as test_client:
        yield test_client

    app.dependency_overrides.clear()


@pytest.mark.asyncio
async def test_root(client):
    response = await client.get("/")

    assert response.status_code == 200
    assert response.json()["health"] == "/health"


@pytest.mark.asyncio
async def test_health_endpoint_all_stores_connected(client, db_session):
    db_session.add(
        JobRun(
            job_name=JobName.TRENDING_SNAPSHOT,
            status=JobStatus.SUCCESS,
            started_at=datetime(2025, 1, 13, 2, 0, tzinfo=timezone.utc),
            records_processed=10,
        )
    )
    await db_session.commit()

    response = await client.get("/health", headers={"X-Request-ID": "req-health"})

    assert response.status_code == 200
    assert response.headers["X-Request-ID"] == "req-health"
    assert "X-API-Latency-ms" in response.headers
    data = response.json()
    assert data["status"] == "healthy"
    assert data["database_connected"] is True
    assert data["redis_connected"] is True
    assert data["timeseries_connected"] is True
    assert data["queue"] == {"pending": 0, "processing": 0, "dead_letter": 0}
    assert data["workers_running"] == 0
    assert [r["job_name"] for r in data["last_job_runs"]] == ["trending_snapshot"]


@pytest.mark.asyncio
async def test_health_degraded_after_failed_job(client, db_session):
    db_session.add(
        JobRun(
            job_name=JobName.DAILY_DOWNLOAD_PUBLISHER,
            status=JobStatus.FAILED,
            started_at=datetime(2025, 1, 15, 1, 0, tzinfo=timezone.utc),
            error_message="selector failed",
        )
    )
    await db_session.commit()

    response = await client.get("/health")

    assert response.json()["status"] == "degraded"


@pytest.mark.asyncio
async def test_search_by_prefix_ordered_by_downloads(client, add_package_download):
    await add_package_download("Sentry", count=100)
    await add_package_download("Sentry.AspNetCore", count=500, icon_url="https://icons.test/s.png")
    await add_package_download("Serilog", count=900)
    await add_package_download("MySentry", count=10000)

    response = await client.get("/api/package/search", params={"q": "SENT"})

    assert response.status_code == 200
    assert response.json() == [
        {"packageId": "Sentry.AspNetCore", "downloadCount": 500, "iconUrl": "https://icons.test/s.png"},
        {"packageId": "Sentry", "downloadCount": 100, "iconUrl": DEFAULT_ICON_URL},
    ]


@pytest.mark.asyncio
async def test_search_escapes_wildcards(client, add_package_download):
    await add_package_download("Foo_Bar", count=1)
    await add_package_download("FooXBar", count=2)

    response = await client.get("/api/package/search", params={"q": "foo_"})

    assert [p["packageId"] for p in response.json()] == ["Foo_Bar"]


@pytest.mark.asyncio
async def test_search_requires_query(client):
    response = await client.get("/api/package/search", params={"q": ""})

    assert response.status_code == 422


@pytest.mark.asyncio
async def test_history_returns_weekly_averages(client, timeseries, add_package_download):
    await add_package_download("Sentry")
    this_week = monday_of(utc_today())
    last_week = this_week - timedelta(weeks=1)
    await timeseries.insert_daily_downloads([
        DailyDownloadFact(package_id="Sentry", date=last_week, download_count=100),
        DailyDownloadFact(package_id="Sentry", date=last_week + timedelta(days=1), download_count=300),
        DailyDownloadFact(package_id="Sentry", date=this_week, download_count=500),
    ])

    response = await client.get("/api/package/history/SENTRY", params={"months": 3})

    assert response.status_code == 200
    assert response.json() == {
        "id": "Sentry",
        "downloads": [
            {"week": last_week.isoformat(), "count": 200.0},
            {"week": this_week.isoformat(), "count": 500.0},
        ],
    }


@pytest.mark.asyncio
async def test_history_unknown_package(client):
    response = await client.get("/api/package/history/nothing")

    assert response.status_code == 404


@pytest.mark.asyncio
async def test_history_rejects_non_positive_months(client):
    response = await client.get("/api/package/history/sentry", params={"months": 0})

    assert response.status_code == 422


@pytest.mark.asyncio
async def test_trending_from_snapshot(client, timeseries):
    week = data_week()
    await timeseries.write_trending_snapshot(
        week,
        [
            TrendingSnapshotRow(
                week=week,
                package_id=f"pkg{i}",
                week_downloads=2000 + i,
                comparison_week_downloads=1000,
                growth_rate=(1000 + i) / 1000,
                package_id_original=f"Pkg{i}",
                github_url="https://github.com/owner/pkg" if i == 9 else None,
            )
            for i in range(10)
        ],
    )

    response = await client.get("/api/package/trending", params={"limit": 3})

    assert response.status_code == 200
    data = response.json()
    assert data["week"] == week.isoformat()
    assert data["packages"][0] == {
        "packageId": "Pkg9",
        "downloadCount": 2009,
        "growthRate": pytest.approx(1.009),
        "iconUrl": DEFAULT_ICON_URL,
        "gitHubUrl": "https://github.com/owner/pkg",
    }
    assert [p["packageId"] for p in data["packages"]] == ["Pkg9", "Pkg8", "Pkg7"]


@pytest.mark.asyncio
async def test_trending_empty(client):
    response = await client.get("/api/package/trending")

    assert response.status_code == 200
    assert response.json() == {"week": data_week().isoformat(), "packages": []}


@pytest.mark.asyncio
@pytest.mark.parametrize("limit", [0, 101])
async def test_trending_limit_bounds(client, limit):
    response = await client.get("/api/package/trending", params={"limit": limit})

    assert response.status_code == 422


@pytest.mark.asyncio
async def test_framework_endpoints(client, timeseries):
    await timeseries.replace_tfm_adoption([
        TfmAdoptionPoint(month=datetime(2024, 1, 1).date(), tfm="net8.0", family=".NET", new_package_count=3, cumulative_package_count=3),
        TfmAdoptionPoint(month=datetime(2024, 1, 1).date(), tfm="net48", family=".NET Framework", new_package_count=1, cumulative_package_count=1),
    ])

    available = await client.get("/api/framework/available")
    adoption = await client.get("/api/framework/adoption", params={"families": ".net framework"})

    assert available.json() == [
        {"family": ".NET", "tfms": ["net8.0"]},
        {"family": ".NET Framework", "tfms": ["net48"]},
    ]
    assert adoption.json() == [
        {
            "month": "2024-01-01",
            "tfm": "net48",
            "family": ".NET Framework",
            "newPackageCount": 1,
            "cumulativePackageCount": 1,
        }
    ]
