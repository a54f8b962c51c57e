"""
Typed records, one per distinct store projection.

Store and job code passes these around instead of tuples or dicts.
"""

from datetime import date, datetime
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator


def compute_growth_rate(week_downloads: int, comparison_week_downloads: int) -> Optional[float]:
    """Week-over-week growth; undefined when the comparison week had no downloads"""
    if comparison_week_downloads <= 0:
        return None
    return (week_downloads - comparison_week_downloads) / comparison_week_downloads


class DailyDownloadFact(BaseModel):
    """One package's total download count observed on one day"""
    package_id: str = Field(..., min_length=1)
    date: date
    download_count: int = Field(..., ge=0)
    
    @field_validator("package_id")
    @classmethod
    def lower_package_id(cls, v: str) -> str:
        return v.strip().lower()


class PackageDownloadUpsert(BaseModel):
    """New current state for one package after a successful registry fetch"""
    package_id: str = Field(..., min_length=1)
    download_count: int = Field(..., ge=0)
    checked_utc: datetime
    icon_url: Optional[str] = None
    
    @property
    def package_id_lowered(self) -> str:
        return self.package_id.lower()


class WeeklyDownloads(BaseModel):
    """Average daily downloads of one package over one Monday-aligned week"""
    week: date
    download_count: float


class TrendingCandidate(BaseModel):
    """A ranked package before metadata enrichment"""
    package_id: str
    week_downloads: int
    comparison_week_downloads: int
    growth_rate: Optional[float] = None


class TrendingSnapshotRow(BaseModel):
    """A ranked, enriched package as stored in the weekly snapshot"""
    week: date
    package_id: str
    week_downloads: int
    comparison_week_downloads: int
    growth_rate: Optional[float] = None
    package_id_original: str
    icon_url: Optional[str] = None
    github_url: Optional[str] = None


class TrendingPackages(BaseModel):
    """The trending list for one data week"""
    week: date
    packages: List[TrendingSnapshotRow] = Field(default_factory=list)
    
    def take(self, limit: int) -> "TrendingPackages":
        return TrendingPackages(week=self.week, packages=self.packages[:limit])


class PackageMetadata(BaseModel):
    """Canonical casing and icon from the metadata store"""
    package_id_lowered: str
    package_id: str
    icon_url: Optional[str] = None


class TfmAdoptionPoint(BaseModel):
    """Packages that started targeting a framework in one month"""
    month: date
    tfm: str
    family: str
    new_package_count: int = Field(..., ge=0)
    cumulative_package_count: int = Field(..., ge=0)


class TfmFamilyGroup(BaseModel):
    family: str
    tfms: List[str] = Field(default_factory=list)
