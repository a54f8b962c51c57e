"""
Download ingestion pipeline.

Moves each known package from "not checked today" to "checked today" once
per day, writing a daily fact to the time-series store and the current
state to the metadata store.

Modules:
    selector: Packages whose download count has not been checked today
    publisher: Daily job publishing one queue message per selected package
    queue: Durable Redis work queue with leases and dead-lettering
    worker: Stateless per-package processing and the worker pool
    runner: Job run audit trail for the batch jobs
    scheduler: APScheduler cron schedule for every batch job

Subpackages:
    extractors: Package registry client
    loaders: Metadata store upserts and catalog removal

Flow:
    1. Publish - select unprocessed packages, enqueue them in chunks
    2. Fetch   - a worker looks up the current total in the registry
    3. Store   - append the daily fact, then upsert the package state
    4. Settle  - ack, requeue, or dead-letter the message

A package the registry no longer knows is removed from the catalog and
the state table, so the selection shrinks to nothing by the end of the day.

Usage:
    from ingestion.publisher import DailyDownloadPublisher
    from ingestion.queue import WorkQueue
    from ingestion.worker import DownloadWorkerPool

    queue = WorkQueue(redis)
    await DailyDownloadPublisher(async_session_maker, queue, redis).publish()

    pool = DownloadWorkerPool(queue, registry, async_session_maker, store)
    pool.start()
"""

__all__ = [
    "DailyDownloadPublisher",
    "WorkQueue",
    "DownloadWorkerPool",
    "process_package",
    "JobRunRecorder",
    "PipelineScheduler",
]
