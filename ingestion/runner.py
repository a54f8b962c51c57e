# ============================================================================
# File: ingestion/runner.py
# Description: Audit trail for scheduled batch jobs
# ============================================================================
"""
Job run recording.

Every scheduled batch job (daily publish, trending snapshot, adoption
snapshot) runs inside a ``JobRunRecorder``. It writes a ``JobRun`` row when
the job starts and completes it with the outcome:

- success: statistics recorded through ``record()``
- skipped: another run held the job lock
- failed: error message and structured details from the exception

The recorder never swallows the exception; failures still propagate to the
scheduler so they show up in the logs and the next run retries.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
import logging

from models import JobRun
from models.base import JobName, JobStatus
from core.exceptions import ConcurrentExecutionSkippedError, PipelineException

logger = logging.getLogger(__name__)


class JobRunRecorder:
    """
    Usage:
        async with JobRunRecorder(async_session_maker, JobName.TRENDING_SNAPSHOT) as run:
            ...
            run.record(processed=250, week="2025-01-06")
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], job_name: JobName):
        self.session_factory = session_factory
        self.job_name = job_name
        self.run_id: Optional[int] = None
        self.started_at: Optional[datetime] = None
        self.records_processed = 0
        self.records_failed = 0
        self.details: Dict[str, Any] = {}

    def record(self, processed: int = 0, failed: int = 0, **details: Any) -> None:
        self.records_processed += processed
        self.records_failed += failed
        self.details.update({k: str(v) if not isinstance(v, (int, float, bool)) else v for k, v in details.items()})

    async def __aenter__(self) -> "JobRunRecorder":
        self.started_at = datetime.now(timezone.utc)
        async with self.session_factory() as session:
            run = JobRun(job_name=self.job_name, status=JobStatus.RUNNING, started_at=self.started_at)
            session.add(run)
            await session.commit()
            self.run_id = run.id
        logger.info(f"Job {self.job_name.value} started (run {self.run_id})")
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        completed_at = datetime.now(timezone.utc)
        duration = (completed_at - self.started_at).total_seconds()

        if exc is None:
            status = JobStatus.SUCCESS
            error_message = None
        elif isinstance(exc, ConcurrentExecutionSkippedError):
            status = JobStatus.SKIPPED
            error_message = exc.message
        else:
            status = JobStatus.FAILED
            error_message = str(exc)
            if isinstance(exc, PipelineException):
                self.details["error"] = exc.to_dict()

        try:
            async with self.session_factory() as session:
                run = await session.get(JobRun, self.run_id)
                if run is not None:
                    run.status = status
                    run.completed_at = completed_at
                    run.duration_seconds = duration
                    run.records_processed = self.records_processed
                    run.records_failed = self.records_failed
                    run.error_message = error_message
                    run.details = self.details or None
                    await session.commit()
        except Exception as e:
            logger.error(f"Failed to record outcome of {self.job_name.value} run {self.run_id}: {e}")

        log = logger.info if status != JobStatus.FAILED else logger.error
        log(
            f"Job {self.job_name.value} finished with status {status.value} in {duration:.2f}s "
            f"(processed={self.records_processed}, failed={self.records_failed})"
        )
        return False
