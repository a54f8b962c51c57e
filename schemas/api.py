"""
Pydantic schemas for API request/response models
"""

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel
from typing import Optional, List, Dict, Any
from datetime import date, datetime, timezone
from models.base import JobName, JobStatus

DEFAULT_ICON_URL = "https://www.nuget.org/Content/gallery/img/default-package-icon.svg"


class CamelModel(BaseModel):
    """Serializes to camelCase for the dashboard, accepts either form"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ============================================================================
# Package Schemas
# ============================================================================

class PackageSearchItem(CamelModel):
    package_id: str
    download_count: int
    icon_url: str = DEFAULT_ICON_URL


class WeeklyDownloadItem(CamelModel):
    week: date
    count: Optional[float] = None


class PackageHistoryResponse(CamelModel):
    """Weekly download history for one package"""
    id: str = Field(..., description="Package id in canonical casing")
    downloads: List[WeeklyDownloadItem] = Field(default_factory=list)


class TrendingPackageItem(CamelModel):
    package_id: str
    download_count: int = Field(..., description="Downloads in the ranked week")
    growth_rate: Optional[float] = None
    icon_url: str = DEFAULT_ICON_URL
    git_hub_url: Optional[str] = None


class TrendingPackagesResponse(CamelModel):
    week: date
    packages: List[TrendingPackageItem] = Field(default_factory=list)
    
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        json_schema_extra={
            "example": {
                "week": "2025-01-06",
                "packages": [
                    {
                        "packageId": "Sentry",
                        "downloadCount": 1400,
                        "growthRate": 0.4,
                        "iconUrl": DEFAULT_ICON_URL,
                        "gitHubUrl": "https://github.com/getsentry/sentry-dotnet"
                    }
                ]
            }
        }
    )


# ============================================================================
# Framework Schemas
# ============================================================================

class TfmAdoptionItem(CamelModel):
    month: date
    tfm: str
    family: str
    new_package_count: int
    cumulative_package_count: int


class TfmFamilyItem(CamelModel):
    family: str
    tfms: List[str] = Field(default_factory=list)


# ============================================================================
# Health Check Schemas
# ============================================================================

class JobRunInfo(BaseModel):
    """Last execution of one scheduled job"""
    job_name: JobName
    status: JobStatus
    started_at: datetime
    completed_at: Optional[datetime] = None
    duration_seconds: Optional[float] = None
    records_processed: int = 0
    error_message: Optional[str] = None
    
    model_config = ConfigDict(from_attributes=True, use_enum_values=True)


class HealthCheckResponse(BaseModel):
    """Health check response model"""
    status: str = Field("healthy", description="Overall system status: healthy, degraded, unhealthy")
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    database_connected: bool
    redis_connected: bool
    timeseries_connected: bool
    queue: Dict[str, int] = Field(default_factory=dict)
    workers_running: int = 0
    last_job_runs: List[JobRunInfo] = Field(default_factory=list)
    
    @model_validator(mode="after")
    def determine_status(self) -> "HealthCheckResponse":
        """Determine overall health status"""
        if not self.database_connected or not self.timeseries_connected:
            self.status = "unhealthy"
        elif not self.redis_connected or any(r.status == JobStatus.FAILED.value for r in self.last_job_runs):
            self.status = "degraded"
        else:
            self.status = "healthy"
        return self


class ErrorResponse(BaseModel):
    """Standard error response"""
    error: str
    detail: Optional[str] = None
    request_id: Optional[str] = None
    context: Optional[Dict[str, Any]] = None
