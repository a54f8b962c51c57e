"""
Fetch workers that drain the daily download queue.

``process_package`` handles exactly one package and keeps no state between
calls; everything it needs is passed in. ``DownloadWorkerPool`` runs a
fixed number of asyncio tasks, each reserving one message at a time and
acknowledging it only after both stores were written.

Per message:
    found      -> append today's fact, upsert package state, ack
    not found  -> remove catalog entries and state, ack
    registry down -> release uncounted, pause until the registry cooldown ends
    transient  -> nack (redelivered until the delivery limit, then dead-lettered)
    permanent  -> dead-letter
"""

import asyncio
import enum
import logging
from datetime import date, datetime, timezone
from typing import List, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.config import settings
from core.dates import utc_today
from core.exceptions import NonRetryableError, QueueError, RegistryUnavailableError
from core.tracing import Tracer, default_tracer
from ingestion.extractors.registry_client import PackageNotFound, RegistryClient
from ingestion.loaders.postgres_loader import PostgresLoader
from ingestion.queue import Delivery, WorkQueue
from schemas.records import DailyDownloadFact, PackageDownloadUpsert
from storage.timeseries import TimeSeriesStore

logger = logging.getLogger(__name__)


class ProcessOutcome(str, enum.Enum):
    FETCHED = "fetched"
    REMOVED = "removed"


async def process_package(
    package_id: str,
    *,
    registry: RegistryClient,
    session_factory: async_sessionmaker[AsyncSession],
    timeseries: TimeSeriesStore,
    today: Optional[date] = None,
    tracer: Optional[Tracer] = None
) -> ProcessOutcome:
    """
    Refresh the download count of one package in both stores.

    The fact is written before the state row: a state row checked today
    means the day's fact exists, so a failure between the two writes only
    leads to a re-fetch, never to a missing fact.
    """
    today = today or utc_today()
    tracer = tracer or default_tracer

    with tracer.span("worker.process_package", package_id=package_id) as span:
        result = await registry.get_package(package_id)

        async with session_factory() as session:
            loader = PostgresLoader(session)

            if isinstance(result, PackageNotFound):
                await loader.remove_package(package_id)
                span.set_data("outcome", ProcessOutcome.REMOVED.value)
                return ProcessOutcome.REMOVED

            await timeseries.insert_daily_downloads(
                [DailyDownloadFact(package_id=result.package_id, date=today, download_count=result.download_count)]
            )
            await loader.upsert_package_downloads(
                [
                    PackageDownloadUpsert(
                        package_id=result.package_id,
                        download_count=result.download_count,
                        checked_utc=datetime.now(timezone.utc),
                        icon_url=result.icon_url,
                    )
                ]
            )

        span.set_data("outcome", ProcessOutcome.FETCHED.value)
        span.set_data("download_count", result.download_count)
        return ProcessOutcome.FETCHED


class DownloadWorkerPool:
    """
    Fixed-size pool of queue consumers.

    Usage:
        pool = DownloadWorkerPool(queue, registry, async_session_maker, store, worker_count=8)
        pool.start()
        ...
        await pool.stop()
    """

    def __init__(
        self,
        queue: WorkQueue,
        registry: RegistryClient,
        session_factory: async_sessionmaker[AsyncSession],
        timeseries: TimeSeriesStore,
        worker_count: Optional[int] = None,
        poll_interval: Optional[float] = None,
        tracer: Optional[Tracer] = None
    ):
        self.queue = queue
        self.registry = registry
        self.session_factory = session_factory
        self.timeseries = timeseries
        self.worker_count = worker_count or settings.WORKER_COUNT
        self.poll_interval = settings.QUEUE_POLL_INTERVAL_SECONDS if poll_interval is None else poll_interval
        self.tracer = tracer or default_tracer
        self._tasks: List[asyncio.Task] = []
        self._stop = asyncio.Event()

    @property
    def running(self) -> int:
        return sum(1 for task in self._tasks if not task.done())

    def start(self) -> None:
        if self._tasks:
            return
        self._stop.clear()
        for worker_id in range(self.worker_count):
            self._tasks.append(
                asyncio.create_task(self._run(worker_id), name=f"download-worker-{worker_id}")
            )
        logger.info(f"Started {self.worker_count} download workers on '{self.queue.name}'")

    async def stop(self) -> None:
        """Stop all workers; in-flight messages stay unacknowledged and are redelivered"""
        self._stop.set()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("Download workers stopped")

    async def _run(self, worker_id: int) -> None:
        logger.debug(f"Worker {worker_id} started")
        while not self._stop.is_set():
            try:
                delivery = await self.queue.reserve()
                if delivery is None:
                    await self._idle()
                    continue
                await self.handle(delivery)
            except asyncio.CancelledError:
                raise
            except RegistryUnavailableError:
                await self._wait_for_registry(worker_id)
            except QueueError as e:
                logger.error(f"Worker {worker_id}: queue error: {e}")
                await self._idle()
            except Exception as e:
                logger.error(f"Worker {worker_id}: unexpected error: {e}", exc_info=True)
                await self._idle()

    async def _idle(self, timeout: Optional[float] = None) -> None:
        try:
            await asyncio.wait_for(
                self._stop.wait(),
                timeout=self.poll_interval if timeout is None else timeout
            )
        except asyncio.TimeoutError:
            pass

    async def _wait_for_registry(self, worker_id: int) -> None:
        delay = self.poll_interval
        until = self.registry.availability.unavailable_until
        if until is not None:
            delay = max(delay, (until - datetime.now(timezone.utc)).total_seconds())
        logger.warning(f"Worker {worker_id}: registry unavailable, pausing for {delay:.0f} seconds")
        await self._idle(delay)

    async def handle(self, delivery: Delivery) -> Optional[ProcessOutcome]:
        """
        Process one delivery and settle it with the broker.

        Raises:
            RegistryUnavailableError: After releasing the message, so the
                caller stops consuming until the registry is back
        """
        package_id = delivery.message.package_id

        if self.queue.is_expired(delivery):
            logger.warning(
                f"Dropping expired message for {package_id} published at "
                f"{delivery.message.published_at.isoformat()}"
            )
            await self.queue.ack(delivery)
            return None

        try:
            outcome = await process_package(
                package_id,
                registry=self.registry,
                session_factory=self.session_factory,
                timeseries=self.timeseries,
                tracer=self.tracer,
            )
        except asyncio.CancelledError:
            raise
        except RegistryUnavailableError as e:
            logger.warning(f"Registry unavailable, returning {package_id} to the queue: {e}")
            await self.queue.release(delivery)
            raise
        except NonRetryableError as e:
            logger.error(f"Permanent failure for {package_id}, dead-lettering: {e}")
            await self.queue.dead_letter(delivery)
            return None
        except Exception as e:
            logger.error(
                f"Failed to process {package_id} (delivery {delivery.delivery_count}/"
                f"{self.queue.max_deliveries}): {e}"
            )
            await self.queue.nack(delivery)
            return None

        await self.queue.ack(delivery)
        return outcome

    async def drain(self) -> int:
        """
        Process messages on the current task until the queue is empty or the
        registry becomes unavailable.

        Returns:
            Number of deliveries handled
        """
        handled = 0
        while True:
            delivery = await self.queue.reserve()
            if delivery is None:
                return handled
            try:
                await self.handle(delivery)
            except RegistryUnavailableError:
                logger.warning(f"Registry unavailable, stopping drain after {handled} deliveries")
                return handled
            handled += 1
