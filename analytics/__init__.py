"""
Weekly analytics over the download time series.

Modules:
    trending: TrendingSnapshotRefresher, the weekly ranking job
    enrichment: Canonical casing, icons and repository URLs for ranked packages
    cache: Cache-aside read caches for the trending list and adoption series
    tfm: Target framework normalization
    adoption: TfmAdoptionRefresher, monthly framework adoption counts

Usage:
    from analytics.trending import TrendingSnapshotRefresher
    from analytics.cache import TrendingPackagesCache
"""

__all__ = [
    "TrendingSnapshotRefresher",
    "TfmAdoptionRefresher",
    "TrendingPackagesCache",
    "TfmAdoptionCache",
    "normalize_tfm",
    "extract_github_url",
]
