"""
Integration tests for the DuckDB time-series store
"""

import pytest
import pytest_asyncio
from datetime import date
from core.exceptions import InputValidationError
from schemas.records import DailyDownloadFact, TfmAdoptionPoint, TrendingSnapshotRow

TODAY = date(2025, 1, 15)
DATA_WEEK = date(2025, 1, 6)
COMPARISON_WEEK = date(2024, 12, 30)


def fact(package_id, day, count):
    return DailyDownloadFact(package_id=package_id, date=day, download_count=count)


def snapshot_row(week, package_id, growth_rate):
    return TrendingSnapshotRow(
        week=week,
        package_id=package_id.lower(),
        week_downloads=2000,
        comparison_week_downloads=1000,
        growth_rate=growth_rate,
        package_id_original=package_id,
    )


class TestDailyFacts:

    @pytest.mark.asyncio
    async def test_ingest_is_idempotent(self, timeseries):
        facts = [fact("Sentry", date(2025, 1, 6), 100), fact("Sentry", date(2025, 1, 7), 200)]

        await timeseries.insert_daily_downloads(facts)
        await timeseries.insert_daily_downloads(facts)

        daily = await timeseries.get_daily_downloads("sentry", date(2025, 1, 1), date(2025, 1, 31))
        weekly = await timeseries.get_weekly_downloads("sentry", months=1, today=TODAY)
        assert [(d.date, d.download_count) for d in daily] == [(date(2025, 1, 6), 100), (date(2025, 1, 7), 200)]
        assert [(w.week, w.download_count) for w in weekly] == [(DATA_WEEK, 150.0)]

    @pytest.mark.asyncio
    async def test_newest_write_wins(self, timeseries):
        await timeseries.insert_daily_downloads([fact("Sentry", date(2025, 1, 6), 100), fact("Sentry", date(2025, 1, 7), 200)])
        await timeseries.insert_daily_downloads([fact("SENTRY", date(2025, 1, 7), 400)])

        daily = await timeseries.get_daily_downloads("Sentry", date(2025, 1, 7), date(2025, 1, 7))
        weekly = await timeseries.get_weekly_downloads("Sentry", months=1, today=TODAY)
        assert daily[0].download_count == 400
        assert weekly[0].download_count == 250.0

    @pytest.mark.asyncio
    async def test_duplicates_within_batch_keep_last(self, timeseries):
        inserted = await timeseries.insert_daily_downloads(
            [fact("Polly", date(2025, 1, 6), 1), fact("polly", date(2025, 1, 6), 2)]
        )

        daily = await timeseries.get_daily_downloads("polly", date(2025, 1, 6), date(2025, 1, 6))
        assert inserted == 1
        assert daily[0].download_count == 2

    @pytest.mark.asyncio
    async def test_empty_batch(self, timeseries):
        assert await timeseries.insert_daily_downloads([]) == 0

    @pytest.mark.asyncio
    async def test_optimize_removes_superseded_facts(self, timeseries):
        await timeseries.insert_daily_downloads([fact("Sentry", date(2025, 1, 6), 100)])
        await timeseries.insert_daily_downloads([fact("Sentry", date(2025, 1, 6), 110)])
        await timeseries.insert_daily_downloads([fact("Sentry", date(2025, 1, 6), 120)])

        assert await timeseries.optimize() == 2
        assert await timeseries.optimize() == 0

        daily = await timeseries.get_daily_downloads("sentry", date(2025, 1, 6), date(2025, 1, 6))
        weekly = await timeseries.get_weekly_downloads("sentry", months=1, today=TODAY)
        assert daily[0].download_count == 120
        assert weekly[0].download_count == 120.0


class TestWeeklyHistory:

    @pytest.mark.asyncio
    async def test_history_is_ascending_and_cut_off(self, timeseries):
        await timeseries.insert_daily_downloads([
            fact("Serilog", date(2025, 1, 8), 300),
            fact("Serilog", date(2024, 12, 2), 50),
            fact("Serilog", date(2024, 12, 14), 100),
            fact("Serilog", date(2024, 12, 15), 200),
            fact("Other", date(2025, 1, 8), 999),
        ])

        # One month before 2025-01-15 is Sunday 2024-12-15, in the week of 2024-12-09
        weekly = await timeseries.get_weekly_downloads("SERILOG", months=1, today=TODAY)

        assert [(w.week, w.download_count) for w in weekly] == [
            (date(2024, 12, 9), 200.0),
            (date(2025, 1, 6), 300.0),
        ]

    @pytest.mark.asyncio
    async def test_unknown_package_has_no_history(self, timeseries):
        assert await timeseries.get_weekly_downloads("nothing", months=3, today=TODAY) == []

    @pytest.mark.asyncio
    async def test_months_must_be_positive(self, timeseries):
        with pytest.raises(InputValidationError):
            await timeseries.get_weekly_downloads("serilog", months=0, today=TODAY)


class TestTrending:

    @pytest_asyncio.fixture
    async def ranked_store(self, timeseries):
        await timeseries.insert_daily_downloads([
            # 700 -> 1400
            fact("Rising", COMPARISON_WEEK, 100),
            fact("Rising", DATA_WEEK, 200),
            # 1400 -> 2800
            fact("Another", COMPARISON_WEEK, 200),
            fact("Another", DATA_WEEK, 400),
            # 2100 -> 2100
            fact("Steady", COMPARISON_WEEK, 300),
            fact("Steady", DATA_WEEK, 300),
            # Below the minimum weekly downloads
            fact("Small", COMPARISON_WEEK, 50),
            fact("Small", DATA_WEEK, 120),
            # No comparison week
            fact("NewThisWeek", DATA_WEEK, 5000),
            # Comparison week without downloads
            fact("ZeroBefore", COMPARISON_WEEK, 0),
            fact("ZeroBefore", DATA_WEEK, 5000),
            # First seen too long ago
            fact("Old", COMPARISON_WEEK, 500),
            fact("Old", DATA_WEEK, 1000),
        ])
        timeseries._conn.execute("INSERT INTO package_first_seen VALUES ('old', DATE '2023-01-02')")
        return timeseries

    @pytest.mark.asyncio
    async def test_first_seen_is_recorded_once(self, ranked_store):
        assert await ranked_store.update_package_first_seen(TODAY) == 6
        assert await ranked_store.update_package_first_seen(TODAY) == 0

    @pytest.mark.asyncio
    async def test_ranking_filters_and_orders(self, ranked_store):
        await ranked_store.update_package_first_seen(TODAY)

        candidates = await ranked_store.compute_trending(min_weekly_downloads=1000, max_age_months=12, today=TODAY)

        assert [c.package_id for c in candidates] == ["another", "rising", "steady"]
        rising = candidates[1]
        assert rising.week_downloads == 1400
        assert rising.comparison_week_downloads == 700
        assert rising.growth_rate == pytest.approx(1.0)
        assert candidates[2].growth_rate == pytest.approx(0.0)

    @pytest.mark.asyncio
    async def test_ranking_respects_limit(self, ranked_store):
        await ranked_store.update_package_first_seen(TODAY)

        candidates = await ranked_store.compute_trending(
            min_weekly_downloads=1000, max_age_months=12, limit=1, today=TODAY
        )

        assert [c.package_id for c in candidates] == ["another"]

    @pytest.mark.asyncio
    async def test_ranking_needs_first_seen(self, ranked_store):
        assert await ranked_store.compute_trending(min_weekly_downloads=1000, max_age_months=12, today=TODAY) == []


class TestFirstSeenBackfill:

    @pytest_asyncio.fixture
    async def imported_store(self, timeseries):
        await timeseries.insert_daily_downloads([
            # Imported history going back two years
            fact("Legacy", date(2023, 1, 2), 400),
            fact("Legacy", COMPARISON_WEEK, 500),
            fact("Legacy", DATA_WEEK, 1000),
            fact("Fresh", COMPARISON_WEEK, 200),
            fact("Fresh", DATA_WEEK, 400),
        ])
        return timeseries

    @pytest.mark.asyncio
    async def test_backfill_uses_oldest_week(self, imported_store):
        assert await imported_store.count_packages_without_first_seen() == 2

        inserted = await imported_store.backfill_package_first_seen()

        assert inserted == {date(2023, 1, 2): 1, COMPARISON_WEEK: 1, DATA_WEEK: 0}
        assert await imported_store.count_packages_without_first_seen() == 0
        first_seen = dict(imported_store._conn.execute("SELECT package_id, first_seen FROM package_first_seen").fetchall())
        assert first_seen == {"legacy": date(2023, 1, 2), "fresh": COMPARISON_WEEK}

    @pytest.mark.asyncio
    async def test_backfilled_old_package_is_not_trending(self, imported_store):
        await imported_store.backfill_package_first_seen()
        # The weekly job afterwards has nothing left to stamp
        assert await imported_store.update_package_first_seen(TODAY) == 0

        candidates = await imported_store.compute_trending(min_weekly_downloads=1000, max_age_months=12, today=TODAY)

        assert [c.package_id for c in candidates] == ["fresh"]

    @pytest.mark.asyncio
    async def test_dry_run_inserts_nothing(self, imported_store):
        inserted = await imported_store.backfill_package_first_seen(dry_run=True)

        assert list(inserted) == [date(2023, 1, 2), COMPARISON_WEEK, DATA_WEEK]
        assert await imported_store.count_packages_without_first_seen() == 2

    @pytest.mark.asyncio
    async def test_snapshot_replaces_week(self, timeseries):
        await timeseries.write_trending_snapshot(DATA_WEEK, [snapshot_row(DATA_WEEK, "A", 2.0), snapshot_row(DATA_WEEK, "B", 1.0)])
        await timeseries.write_trending_snapshot(DATA_WEEK, [snapshot_row(DATA_WEEK, "C", 0.5)])

        latest = await timeseries.get_trending_snapshot(10)

        assert latest.week == DATA_WEEK
        assert [p.package_id_original for p in latest.packages] == ["C"]

    @pytest.mark.asyncio
    async def test_snapshot_serves_latest_week(self, timeseries):
        await timeseries.write_trending_snapshot(DATA_WEEK, [snapshot_row(DATA_WEEK, "New", 0.1)])
        await timeseries.write_trending_snapshot(COMPARISON_WEEK, [snapshot_row(COMPARISON_WEEK, "Previous", 9.0)])

        latest = await timeseries.get_trending_snapshot(10)

        assert latest.week == DATA_WEEK
        assert [p.package_id for p in latest.packages] == ["new"]

    @pytest.mark.asyncio
    async def test_snapshot_limit_and_order(self, timeseries):
        await timeseries.write_trending_snapshot(
            DATA_WEEK,
            [snapshot_row(DATA_WEEK, "Low", 0.1), snapshot_row(DATA_WEEK, "High", 3.0), snapshot_row(DATA_WEEK, "Mid", 1.0)],
        )

        top = await timeseries.get_trending_snapshot(2)

        assert [p.package_id_original for p in top.packages] == ["High", "Mid"]

    @pytest.mark.asyncio
    async def test_no_snapshot(self, timeseries):
        assert await timeseries.get_trending_snapshot(10) is None


class TestFrameworkAdoption:

    @pytest.mark.asyncio
    async def test_replace_and_group(self, timeseries):
        await timeseries.replace_tfm_adoption([
            TfmAdoptionPoint(month=date(2024, 1, 1), tfm="net8.0", family=".NET", new_package_count=1, cumulative_package_count=1),
        ])
        await timeseries.replace_tfm_adoption([
            TfmAdoptionPoint(month=date(2024, 1, 1), tfm="netstandard2.0", family=".NET Standard", new_package_count=3, cumulative_package_count=3),
            TfmAdoptionPoint(month=date(2024, 2, 1), tfm="net9.0", family=".NET", new_package_count=1, cumulative_package_count=1),
            TfmAdoptionPoint(month=date(2024, 1, 1), tfm="net8.0", family=".NET", new_package_count=2, cumulative_package_count=2),
        ])

        points = await timeseries.get_tfm_adoption()
        groups = await timeseries.get_available_tfms()

        assert [(p.tfm, p.new_package_count) for p in points] == [("net8.0", 2), ("net9.0", 1), ("netstandard2.0", 3)]
        assert [(g.family, g.tfms) for g in groups] == [(".NET", ["net8.0", "net9.0"]), (".NET Standard", ["netstandard2.0"])]

    @pytest.mark.asyncio
    async def test_ping(self, timeseries):
        assert await timeseries.ping() is True
        timeseries.close()
        assert await timeseries.ping() is False
