"""
Pydantic schemas for store records and API responses.

Schemas:
    records: Typed records, one per store projection (facts, weekly
             averages, trending candidates and snapshot rows, adoption points)
    api: HTTP response models, serialized in camelCase

Usage:
    from schemas.records import DailyDownloadFact, TrendingSnapshotRow
    from schemas.api import TrendingPackagesResponse

Example:
    fact = DailyDownloadFact(package_id="Sentry", date=date.today(), download_count=42)
    assert fact.package_id == "sentry"
"""

__all__ = [
    "DailyDownloadFact",
    "PackageDownloadUpsert",
    "WeeklyDownloads",
    "TrendingCandidate",
    "TrendingSnapshotRow",
    "TrendingPackages",
    "PackageMetadata",
    "TfmAdoptionPoint",
    "TfmFamilyGroup",
    "compute_growth_rate",
]
