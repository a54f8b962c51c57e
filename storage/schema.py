"""
DDL for the DuckDB time-series store.

daily_downloads is append-only. A re-fetch of the same (package, date)
appends a new row with a higher ``version``; readers take the row with the
highest version per key (``arg_max``) and ``optimize`` deletes the rest.

weekly_downloads keeps the average as a mergeable (sum, days) pair per
(package, week). Readers finalize it as SUM(download_sum) / SUM(download_days).
"""

SCHEMA_STATEMENTS = [
    "CREATE SEQUENCE IF NOT EXISTS daily_downloads_version_seq",
    """
    CREATE TABLE IF NOT EXISTS daily_downloads (
        package_id VARCHAR NOT NULL,
        date DATE NOT NULL,
        download_count UBIGINT NOT NULL,
        version BIGINT NOT NULL DEFAULT nextval('daily_downloads_version_seq'),
        inserted_at TIMESTAMP NOT NULL DEFAULT current_timestamp
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS weekly_downloads (
        package_id VARCHAR NOT NULL,
        week DATE NOT NULL,
        download_sum DOUBLE NOT NULL,
        download_days INTEGER NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS package_first_seen (
        package_id VARCHAR PRIMARY KEY,
        first_seen DATE NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS trending_packages_snapshot (
        week DATE NOT NULL,
        package_id VARCHAR NOT NULL,
        week_downloads BIGINT NOT NULL,
        comparison_week_downloads BIGINT NOT NULL,
        growth_rate DOUBLE,
        package_id_original VARCHAR NOT NULL,
        icon_url VARCHAR,
        github_url VARCHAR,
        computed_at TIMESTAMP NOT NULL DEFAULT current_timestamp
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS tfm_adoption_snapshot (
        month DATE NOT NULL,
        tfm VARCHAR NOT NULL,
        family VARCHAR NOT NULL,
        new_package_count INTEGER NOT NULL,
        cumulative_package_count INTEGER NOT NULL,
        computed_at TIMESTAMP NOT NULL DEFAULT current_timestamp
    )
    """,
]
