"""
SQLAlchemy ORM models for the metadata store.

Models:
    base: Base declarative class and shared enums (JobName, JobStatus)
    package_download: Current download state per package (PackageDownload)
    catalog: Catalog leaves with dependency groups, owned by the crawler
    job_run: Batch job execution audit trail

Database Schema:
    All models inherit from the Base declarative class. Column types fall
    back to portable equivalents on SQLite so the test suite can run
    without a Postgres server.

Usage:
    from models import PackageDownload, PackageDetailsCatalogLeaf, JobRun
    from models.base import JobName, JobStatus

Relationships:
    - PackageDetailsCatalogLeaf → PackageDependencyGroup (one-to-many)
    - PackageDependencyGroup → PackageDependency (one-to-many)
    - PackageDownload is joined to catalog leaves by package_id_lowered
"""

from models.base import Base, JobName, JobStatus
from models.package_download import PackageDownload
from models.catalog import PackageDetailsCatalogLeaf, PackageDependencyGroup, PackageDependency
from models.job_run import JobRun

__all__ = [
    "Base",
    "JobName",
    "JobStatus",
    "PackageDownload",
    "PackageDetailsCatalogLeaf",
    "PackageDependencyGroup",
    "PackageDependency",
    "JobRun",
]
