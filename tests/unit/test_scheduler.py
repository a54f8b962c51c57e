import pytest
from unittest.mock import AsyncMock, MagicMock
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from core.exceptions import BatchJobError, ConcurrentExecutionSkippedError
from ingestion.scheduler import PipelineScheduler


@pytest.fixture
def pipeline():
    return PipelineScheduler(
        publisher=MagicMock(publish=AsyncMock()),
        trending=MagicMock(refresh=AsyncMock()),
        adoption=MagicMock(refresh=AsyncMock()),
        queue=MagicMock(requeue_expired=AsyncMock(return_value=0)),
        timeseries=MagicMock(optimize=AsyncMock(return_value=0)),
        scheduler=AsyncIOScheduler(timezone="UTC"),
    )


def test_scheduler_registers_all_jobs(pipeline):
    pipeline.register_jobs()

    jobs = {job.id: job for job in pipeline.scheduler.get_jobs()}
    assert set(jobs) == {
        "daily_download_publish",
        "trending_snapshot_refresh",
        "tfm_adoption_refresh",
        "queue_lease_sweep",
        "timeseries_compaction",
    }
    assert isinstance(jobs["daily_download_publish"].trigger, CronTrigger)
    assert isinstance(jobs["queue_lease_sweep"].trigger, IntervalTrigger)
    assert all(job.max_instances == 1 for job in jobs.values())


@pytest.mark.asyncio
async def test_scheduler_job_execution(pipeline):
    await pipeline.run_daily_publish()
    await pipeline.run_trending_refresh()
    await pipeline.run_adoption_refresh()
    await pipeline.run_queue_sweep()
    await pipeline.run_compaction()

    pipeline.publisher.publish.assert_awaited_once()
    pipeline.trending.refresh.assert_awaited_once()
    pipeline.adoption.refresh.assert_awaited_once()
    pipeline.queue.requeue_expired.assert_awaited_once()
    pipeline.timeseries.optimize.assert_awaited_once()


@pytest.mark.asyncio
async def test_job_failures_do_not_escape(pipeline):
    pipeline.publisher.publish.side_effect = ConcurrentExecutionSkippedError("already running")
    pipeline.trending.refresh.side_effect = BatchJobError("rank failed")
    pipeline.adoption.refresh.side_effect = RuntimeError("unexpected")
    pipeline.queue.requeue_expired.side_effect = RuntimeError("redis down")

    await pipeline.run_daily_publish()
    await pipeline.run_trending_refresh()
    await pipeline.run_adoption_refresh()
    await pipeline.run_queue_sweep()
