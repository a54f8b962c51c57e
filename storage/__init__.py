"""
Columnar time-series storage.

Modules:
    schema: DDL for facts, weekly averages, first-seen weeks and snapshots
    timeseries: TimeSeriesStore, the async facade over one DuckDB connection

Usage:
    from storage.timeseries import TimeSeriesStore

    store = TimeSeriesStore(":memory:").connect()
"""

__all__ = ["TimeSeriesStore"]
