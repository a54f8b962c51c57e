"""
DuckDB-backed time-series store.

Holds the append-only daily download facts and the read models derived
from them: weekly averages, first-seen weeks, the weekly trending snapshot
and the target-framework adoption series.

DuckDB is an in-process, single-writer database. One ``TimeSeriesStore``
owns the connection for the whole process; every call is serialized by a
lock and runs in a worker thread so the event loop never blocks on a scan.
"""

import asyncio
import logging
import threading
from contextlib import contextmanager
from datetime import date, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence

import duckdb
import pandas as pd

from core.config import settings
from core.dates import comparison_week, data_week, subtract_months, utc_today
from core.exceptions import InputValidationError, TimeSeriesError
from core.tracing import Tracer, default_tracer
from schemas.records import (
    DailyDownloadFact,
    TfmAdoptionPoint,
    TfmFamilyGroup,
    TrendingCandidate,
    TrendingPackages,
    TrendingSnapshotRow,
    WeeklyDownloads,
)
from storage.schema import SCHEMA_STATEMENTS

logger = logging.getLogger(__name__)

# ----------------------------------------------------------------------------
# Queries
# ----------------------------------------------------------------------------

_INSERT_FACTS = """
    INSERT INTO daily_downloads (package_id, date, download_count)
    SELECT package_id, CAST(date AS DATE), CAST(download_count AS UBIGINT)
    FROM incoming_facts
"""

_DELETE_TOUCHED_WEEKS = """
    DELETE FROM weekly_downloads
    USING (
        SELECT DISTINCT package_id,
               CAST(date_trunc('week', CAST(date AS DATE)) AS DATE) AS week
        FROM incoming_facts
    ) touched
    WHERE weekly_downloads.package_id = touched.package_id
      AND weekly_downloads.week = touched.week
"""

_REBUILD_TOUCHED_WEEKS = """
    INSERT INTO weekly_downloads (package_id, week, download_sum, download_days)
    SELECT package_id, week, CAST(SUM(download_count) AS DOUBLE), CAST(COUNT(*) AS INTEGER)
    FROM (
        SELECT d.package_id,
               CAST(date_trunc('week', d.date) AS DATE) AS week,
               arg_max(d.download_count, d.version) AS download_count
        FROM daily_downloads d
        JOIN (
            SELECT DISTINCT package_id,
                   CAST(date_trunc('week', CAST(date AS DATE)) AS DATE) AS week
            FROM incoming_facts
        ) touched
          ON d.package_id = touched.package_id
         AND d.date >= touched.week
         AND d.date < touched.week + 7
        WHERE d.date >= ? AND d.date < ?
        GROUP BY d.package_id, d.date
    ) AS merged
    GROUP BY package_id, week
"""

_SELECT_DAILY = """
    SELECT package_id, date, arg_max(download_count, version) AS download_count
    FROM daily_downloads
    WHERE package_id = ? AND date >= ? AND date <= ?
    GROUP BY package_id, date
    ORDER BY date
"""

_SELECT_WEEKLY = """
    SELECT CAST(date_trunc('week', date) AS DATE) AS week, AVG(download_count) AS download_count
    FROM (
        SELECT date, arg_max(download_count, version) AS download_count
        FROM daily_downloads
        WHERE package_id = ? AND date >= ?
        GROUP BY date
    ) AS merged
    GROUP BY week
    ORDER BY week
"""

_UPDATE_FIRST_SEEN = """
    INSERT INTO package_first_seen (package_id, first_seen)
    SELECT DISTINCT package_id, CAST(? AS DATE)
    FROM weekly_downloads
    WHERE week = ?
      AND package_id NOT IN (SELECT package_id FROM package_first_seen)
"""

_SELECT_HISTORY_WEEKS = """
    SELECT DISTINCT week FROM weekly_downloads ORDER BY week
"""

_COUNT_MISSING_FIRST_SEEN = """
    SELECT count(DISTINCT package_id)
    FROM weekly_downloads
    WHERE package_id NOT IN (SELECT package_id FROM package_first_seen)
"""

_COMPUTE_TRENDING = """
    WITH current_week AS (
        SELECT package_id, SUM(download_sum) / SUM(download_days) AS avg_downloads
        FROM weekly_downloads
        WHERE week = ?
        GROUP BY package_id
    ),
    previous_week AS (
        SELECT package_id, SUM(download_sum) / SUM(download_days) AS avg_downloads
        FROM weekly_downloads
        WHERE week = ?
        GROUP BY package_id
    ),
    weekly_totals AS (
        SELECT c.package_id,
               CAST(trunc(c.avg_downloads * 7) AS BIGINT) AS week_downloads,
               CAST(trunc(p.avg_downloads * 7) AS BIGINT) AS comparison_week_downloads
        FROM current_week c
        JOIN previous_week p ON c.package_id = p.package_id
        JOIN package_first_seen f ON c.package_id = f.package_id
        WHERE f.first_seen >= ?
    )
    SELECT package_id,
           week_downloads,
           comparison_week_downloads,
           CAST(week_downloads - comparison_week_downloads AS DOUBLE) / comparison_week_downloads AS growth_rate
    FROM weekly_totals
    WHERE week_downloads >= ?
      AND comparison_week_downloads > 0
    ORDER BY growth_rate DESC, package_id
    LIMIT {limit}
"""

_INSERT_SNAPSHOT_ROW = """
    INSERT INTO trending_packages_snapshot (
        week, package_id, week_downloads, comparison_week_downloads, growth_rate,
        package_id_original, icon_url, github_url
    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
"""

_SELECT_LATEST_SNAPSHOT = """
    SELECT week, package_id, week_downloads, comparison_week_downloads, growth_rate,
           package_id_original, icon_url, github_url
    FROM trending_packages_snapshot
    WHERE week = (SELECT max(week) FROM trending_packages_snapshot)
    ORDER BY growth_rate DESC NULLS LAST, package_id
    LIMIT {limit}
"""

_INSERT_TFM_POINT = """
    INSERT INTO tfm_adoption_snapshot (month, tfm, family, new_package_count, cumulative_package_count)
    VALUES (?, ?, ?, ?, ?)
"""

_COMPACT_FACTS = """
    DELETE FROM daily_downloads
    WHERE version NOT IN (
        SELECT max(version) FROM daily_downloads GROUP BY package_id, date
    )
"""


class TimeSeriesStore:
    """
    Columnar store for download facts and trending read models.

    Usage:
        store = TimeSeriesStore("data/timeseries.duckdb")
        store.connect()
        await store.insert_daily_downloads([fact])
        history = await store.get_weekly_downloads("sentry", months=12)
        store.close()
    """

    def __init__(self, path: Optional[str] = None, tracer: Optional[Tracer] = None):
        self.path = path or settings.TIMESERIES_DB_PATH
        self.tracer = tracer or default_tracer
        self._conn: Optional[duckdb.DuckDBPyConnection] = None
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def connect(self) -> "TimeSeriesStore":
        if self._conn is not None:
            return self
        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = duckdb.connect(self.path)
        with self._lock:
            for statement in SCHEMA_STATEMENTS:
                self._conn.execute(statement)
        logger.info(f"Time-series store opened at {self.path}")
        return self

    def close(self) -> None:
        if self._conn is not None:
            with self._lock:
                self._conn.close()
                self._conn = None
            logger.info("Time-series store closed")

    def __enter__(self) -> "TimeSeriesStore":
        return self.connect()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Execution helpers
    # ------------------------------------------------------------------

    def _call(self, fn: Callable[..., Any], *args: Any) -> Any:
        if self._conn is None:
            raise TimeSeriesError("Time-series store is not connected", context={"path": self.path})
        with self._lock:
            return fn(self._conn, *args)

    async def _run(self, operation: str, fn: Callable[..., Any], *args: Any, **span_data: Any) -> Any:
        with self.tracer.span("timeseries.query", operation, **span_data):
            try:
                return await asyncio.to_thread(self._call, fn, *args)
            except duckdb.Error as e:
                raise TimeSeriesError(
                    f"Time-series operation '{operation}' failed",
                    context={"operation": operation, **span_data},
                    original_exception=e
                )

    @staticmethod
    @contextmanager
    def _transaction(conn: duckdb.DuckDBPyConnection) -> Iterator[duckdb.DuckDBPyConnection]:
        conn.begin()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    # ------------------------------------------------------------------
    # Daily facts
    # ------------------------------------------------------------------

    async def insert_daily_downloads(self, facts: Sequence[DailyDownloadFact]) -> int:
        """
        Append a batch of daily facts and refresh the weekly averages they touch.

        Writing the same (package, date) again with a different count is
        safe: the newest write wins on every read path.

        Returns:
            Number of facts appended (after collapsing duplicates in the batch)
        """
        if not facts:
            return 0

        frame = pd.DataFrame(
            {
                "package_id": [f.package_id for f in facts],
                "date": pd.to_datetime([f.date for f in facts]),
                "download_count": [f.download_count for f in facts],
            }
        ).drop_duplicates(subset=["package_id", "date"], keep="last")

        first_week = min(f.date for f in facts)
        first_week -= timedelta(days=first_week.weekday())
        end = max(f.date for f in facts)
        end += timedelta(days=7 - end.weekday())

        def _insert(conn: duckdb.DuckDBPyConnection) -> int:
            conn.register("incoming_facts", frame)
            try:
                with self._transaction(conn):
                    conn.execute(_INSERT_FACTS)
                    conn.execute(_DELETE_TOUCHED_WEEKS)
                    conn.execute(_REBUILD_TOUCHED_WEEKS, [first_week, end])
            finally:
                conn.unregister("incoming_facts")
            return len(frame)

        inserted = await self._run("insert_daily_downloads", _insert, rows=len(frame))
        logger.debug(f"Appended {inserted} daily download facts")
        return inserted

    async def get_daily_downloads(
        self,
        package_id: str,
        start: date,
        end: date
    ) -> List[DailyDownloadFact]:
        """Merged daily facts for one package, one row per date"""
        key = package_id.strip().lower()

        def _select(conn: duckdb.DuckDBPyConnection) -> List[tuple]:
            return conn.execute(_SELECT_DAILY, [key, start, end]).fetchall()

        rows = await self._run("get_daily_downloads", _select, package_id=key)
        return [
            DailyDownloadFact(package_id=row[0], date=row[1], download_count=row[2])
            for row in rows
        ]

    # ------------------------------------------------------------------
    # Weekly averages
    # ------------------------------------------------------------------

    async def get_weekly_downloads(
        self,
        package_id: str,
        months: int,
        today: Optional[date] = None
    ) -> List[WeeklyDownloads]:
        """
        Weekly average downloads for one package, ascending by week.

        Only days on or after the cutoff are averaged, so the oldest week
        may be partial.

        Args:
            package_id: Package id in any casing
            months: How far back to look (days on or after today minus ``months``)
            today: Reference date, defaults to the current UTC date
        """
        if months < 1:
            raise InputValidationError(
                "months must be at least 1",
                context={"months": months, "package_id": package_id}
            )

        key = package_id.strip().lower()
        cutoff = subtract_months(today or utc_today(), months)

        def _select(conn: duckdb.DuckDBPyConnection) -> List[tuple]:
            return conn.execute(_SELECT_WEEKLY, [key, cutoff]).fetchall()

        rows = await self._run("get_weekly_downloads", _select, package_id=key, months=months)
        return [WeeklyDownloads(week=row[0], download_count=row[1]) for row in rows]

    # ------------------------------------------------------------------
    # Trending
    # ------------------------------------------------------------------

    async def update_package_first_seen(self, today: Optional[date] = None) -> int:
        """
        Record the data week as first-seen for packages that have data in it
        and are not tracked yet. Running it twice inserts nothing the second time.
        """
        week = data_week(today)

        def _update(conn: duckdb.DuckDBPyConnection) -> int:
            with self._transaction(conn):
                result = conn.execute(_UPDATE_FIRST_SEEN, [week, week]).fetchone()
            return int(result[0]) if result else 0

        inserted = await self._run("update_package_first_seen", _update, week=week)
        logger.info(f"Recorded first-seen week {week} for {inserted} packages")
        return inserted

    async def count_packages_without_first_seen(self) -> int:
        def _count(conn: duckdb.DuckDBPyConnection) -> int:
            return int(conn.execute(_COUNT_MISSING_FIRST_SEEN).fetchone()[0])

        return await self._run("count_packages_without_first_seen", _count)

    async def backfill_package_first_seen(self, dry_run: bool = False) -> Dict[date, int]:
        """
        Derive first-seen weeks from the full weekly history.

        Walks every week in ``weekly_downloads`` oldest first and records it as
        first-seen for packages not tracked yet, one transaction per week.
        Packages with imported history therefore get their real first week
        instead of the week the trending job first ran.

        Args:
            dry_run: Only list the weeks, insert nothing

        Returns:
            Packages inserted per week, in week order
        """
        def _weeks(conn: duckdb.DuckDBPyConnection) -> List[date]:
            return [row[0] for row in conn.execute(_SELECT_HISTORY_WEEKS).fetchall()]

        weeks = await self._run("list_history_weeks", _weeks)
        logger.info(f"Backfilling first-seen weeks over {len(weeks)} weeks of history")

        inserted: Dict[date, int] = {}
        for i, week in enumerate(weeks, start=1):
            if dry_run:
                inserted[week] = 0
                continue

            def _update(conn: duckdb.DuckDBPyConnection, week: date = week) -> int:
                with self._transaction(conn):
                    result = conn.execute(_UPDATE_FIRST_SEEN, [week, week]).fetchone()
                return int(result[0]) if result else 0

            inserted[week] = await self._run("backfill_package_first_seen", _update, week=week)
            logger.info(f"[{i}/{len(weeks)}] Week {week}: +{inserted[week]} packages")

        return inserted

    async def compute_trending(
        self,
        min_weekly_downloads: int,
        max_age_months: int,
        limit: int = 1000,
        today: Optional[date] = None
    ) -> List[TrendingCandidate]:
        """
        Rank packages by growth of the last completed week over the week before.

        Only packages first seen within ``max_age_months`` qualify, and only
        when the data week reaches ``min_weekly_downloads`` and the comparison
        week had any downloads at all.
        """
        if limit < 1:
            raise InputValidationError("limit must be at least 1", context={"limit": limit})

        today = today or utc_today()
        current = data_week(today)
        previous = comparison_week(today)
        age_cutoff = subtract_months(today, max_age_months)
        sql = _COMPUTE_TRENDING.format(limit=int(limit))

        def _select(conn: duckdb.DuckDBPyConnection) -> List[tuple]:
            return conn.execute(sql, [current, previous, age_cutoff, min_weekly_downloads]).fetchall()

        rows = await self._run("compute_trending", _select, week=current, comparison_week=previous)
        return [
            TrendingCandidate(
                package_id=row[0],
                week_downloads=row[1],
                comparison_week_downloads=row[2],
                growth_rate=row[3],
            )
            for row in rows
        ]

    async def write_trending_snapshot(self, week: date, rows: Sequence[TrendingSnapshotRow]) -> int:
        """Replace every snapshot row for ``week`` with ``rows`` in one transaction"""
        values = [
            (
                week,
                row.package_id,
                row.week_downloads,
                row.comparison_week_downloads,
                row.growth_rate,
                row.package_id_original,
                row.icon_url,
                row.github_url,
            )
            for row in rows
        ]

        def _replace(conn: duckdb.DuckDBPyConnection) -> int:
            with self._transaction(conn):
                conn.execute("DELETE FROM trending_packages_snapshot WHERE week = ?", [week])
                if values:
                    conn.executemany(_INSERT_SNAPSHOT_ROW, values)
            return len(values)

        written = await self._run("write_trending_snapshot", _replace, week=week, rows=len(values))
        logger.info(f"Wrote trending snapshot for week {week} with {written} packages")
        return written

    async def get_trending_snapshot(self, limit: int) -> Optional[TrendingPackages]:
        """
        Top ``limit`` rows of the most recent snapshot week.

        Returns None when no snapshot has ever been written.
        """
        if limit < 1:
            raise InputValidationError("limit must be at least 1", context={"limit": limit})
        sql = _SELECT_LATEST_SNAPSHOT.format(limit=int(limit))

        def _select(conn: duckdb.DuckDBPyConnection) -> List[tuple]:
            return conn.execute(sql).fetchall()

        rows = await self._run("get_trending_snapshot", _select, limit=limit)
        if not rows:
            return None

        return TrendingPackages(
            week=rows[0][0],
            packages=[
                TrendingSnapshotRow(
                    week=row[0],
                    package_id=row[1],
                    week_downloads=row[2],
                    comparison_week_downloads=row[3],
                    growth_rate=row[4],
                    package_id_original=row[5],
                    icon_url=row[6],
                    github_url=row[7],
                )
                for row in rows
            ],
        )

    # ------------------------------------------------------------------
    # Target framework adoption
    # ------------------------------------------------------------------

    async def replace_tfm_adoption(self, points: Sequence[TfmAdoptionPoint]) -> int:
        values = [
            (p.month, p.tfm, p.family, p.new_package_count, p.cumulative_package_count)
            for p in points
        ]

        def _replace(conn: duckdb.DuckDBPyConnection) -> int:
            with self._transaction(conn):
                conn.execute("DELETE FROM tfm_adoption_snapshot")
                if values:
                    conn.executemany(_INSERT_TFM_POINT, values)
            return len(values)

        return await self._run("replace_tfm_adoption", _replace, rows=len(values))

    async def get_tfm_adoption(self) -> List[TfmAdoptionPoint]:
        def _select(conn: duckdb.DuckDBPyConnection) -> List[tuple]:
            return conn.execute(
                "SELECT month, tfm, family, new_package_count, cumulative_package_count "
                "FROM tfm_adoption_snapshot ORDER BY family, tfm, month"
            ).fetchall()

        rows = await self._run("get_tfm_adoption", _select)
        return [
            TfmAdoptionPoint(
                month=row[0],
                tfm=row[1],
                family=row[2],
                new_package_count=row[3],
                cumulative_package_count=row[4],
            )
            for row in rows
        ]

    async def get_available_tfms(self) -> List[TfmFamilyGroup]:
        def _select(conn: duckdb.DuckDBPyConnection) -> List[tuple]:
            return conn.execute(
                "SELECT DISTINCT family, tfm FROM tfm_adoption_snapshot ORDER BY family, tfm"
            ).fetchall()

        rows = await self._run("get_available_tfms", _select)
        groups: Dict[str, TfmFamilyGroup] = {}
        for family, tfm in rows:
            groups.setdefault(family, TfmFamilyGroup(family=family)).tfms.append(tfm)
        return list(groups.values())

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def optimize(self) -> int:
        """Delete fact rows superseded by a newer write for the same (package, date)"""
        def _compact(conn: duckdb.DuckDBPyConnection) -> int:
            with self._transaction(conn):
                result = conn.execute(_COMPACT_FACTS).fetchone()
            return int(result[0]) if result else 0

        removed = await self._run("optimize", _compact)
        logger.info(f"Compacted daily downloads, removed {removed} superseded facts")
        return removed

    async def ping(self) -> bool:
        try:
            await self._run("ping", lambda conn: conn.execute("SELECT 1").fetchone())
            return True
        except TimeSeriesError as e:
            logger.error(f"Time-series health check failed: {e}")
            return False
