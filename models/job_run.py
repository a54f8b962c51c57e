from sqlalchemy import Column, String, Enum, DateTime, Float, Integer, Text, Index
from datetime import datetime, timezone
import uuid
from models.base import Base, BigIntPK, JSONType, JobName, JobStatus


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobRun(Base):
    """
    Tracks each execution of a scheduled batch job.
    
    Purpose:
    - Audit trail of publisher, trending and adoption runs
    - Failure visibility for the health endpoint
    - Duration tracking
    """
    __tablename__ = "job_runs"
    
    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    run_id = Column(String(36), default=lambda: str(uuid.uuid4()), unique=True, nullable=False, index=True)
    
    job_name = Column(Enum(JobName), nullable=False, index=True)
    status = Column(Enum(JobStatus), default=JobStatus.RUNNING, nullable=False, index=True)
    
    # Timestamps
    started_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, index=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    duration_seconds = Column(Float, nullable=True)
    
    # Statistics
    records_processed = Column(Integer, default=0)
    records_failed = Column(Integer, default=0)
    
    # Error tracking
    error_message = Column(Text, nullable=True)
    details = Column(JSONType, nullable=True)
    
    __table_args__ = (
        Index("idx_job_run_name_started", "job_name", "started_at"),
    )
    
    def __repr__(self):
        return f"<JobRun(job={self.job_name}, status={self.status}, started={self.started_at})>"
