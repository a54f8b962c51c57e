"""
Daily publisher: enqueue every package that has not been checked today.

Runs once a day. Publishing is fire-and-forget: a chunk that fails to
publish is logged and skipped, and the next daily run selects the same
packages again because their state is still stale.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import date
from typing import List, Optional

import redis.asyncio as aioredis
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.config import settings
from core.dates import utc_today
from core.exceptions import BatchJobError, PipelineException, QueueError
from core.locks import JobLock
from core.tracing import Tracer, default_tracer
from ingestion.queue import WorkQueue
from ingestion.runner import JobRunRecorder
from ingestion.selector import iter_unprocessed_package_ids
from models.base import JobName

logger = logging.getLogger(__name__)


@dataclass
class PublishResult:
    selected: int = 0
    published: int = 0
    failed: int = 0
    cancelled: bool = False


class DailyDownloadPublisher:
    """
    Selects unprocessed packages and publishes one queue message per package.

    At most one publish runs at a time across all processes; a second
    concurrent run raises ``ConcurrentExecutionSkippedError``.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        queue: WorkQueue,
        redis: aioredis.Redis,
        batch_size: Optional[int] = None,
        tracer: Optional[Tracer] = None
    ):
        self.session_factory = session_factory
        self.queue = queue
        self.redis = redis
        self.batch_size = batch_size or settings.QUEUE_PUBLISH_BATCH_SIZE
        self.tracer = tracer or default_tracer

    async def publish(
        self,
        today: Optional[date] = None,
        cancel_event: Optional[asyncio.Event] = None
    ) -> PublishResult:
        today = today or utc_today()

        async with JobRunRecorder(self.session_factory, JobName.DAILY_DOWNLOAD_PUBLISHER) as run:
            async with JobLock(self.redis, JobName.DAILY_DOWNLOAD_PUBLISHER.value):
                with self.tracer.span("job.publish", str(today)) as span:
                    result = await self._publish(today, cancel_event)
                    span.set_data("published", result.published)

            run.record(
                processed=result.published,
                failed=result.failed,
                selected=result.selected,
                cancelled=result.cancelled,
                day=today,
            )

        logger.info(
            f"Published {result.published}/{result.selected} packages to '{self.queue.name}' "
            f"({result.failed} failed{', cancelled' if result.cancelled else ''})"
        )
        return result

    async def _publish(self, today: date, cancel_event: Optional[asyncio.Event]) -> PublishResult:
        result = PublishResult()
        batch: List[str] = []

        try:
            async with self.session_factory() as session:
                async for package_id in iter_unprocessed_package_ids(session, today):
                    if cancel_event is not None and cancel_event.is_set():
                        logger.warning("Publishing cancelled, unselected packages wait for the next run")
                        result.cancelled = True
                        break

                    result.selected += 1
                    batch.append(package_id)
                    if len(batch) >= self.batch_size:
                        await self._flush(batch, result)
                        batch = []
        except PipelineException:
            raise
        except Exception as e:
            raise BatchJobError(
                "Failed to select unprocessed packages",
                context={"job": JobName.DAILY_DOWNLOAD_PUBLISHER.value, "day": str(today)},
                original_exception=e
            )

        if batch:
            await self._flush(batch, result)
        return result

    async def _flush(self, batch: List[str], result: PublishResult) -> None:
        try:
            result.published += await self.queue.publish_many(batch)
        except QueueError as e:
            result.failed += len(batch)
            logger.warning(f"Skipping {len(batch)} packages that failed to publish: {e}")
