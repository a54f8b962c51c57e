"""
Core utilities and configuration for the package trends pipeline.

This package provides foundational components used by the ingestion
workers, the analytics jobs and the read API:

Modules:
    config: Application configuration and environment variable management
    database: Relational engine and session management
    redis: Redis client factory (queue, job locks, read cache)
    locks: Redis-backed mutual exclusion for batch jobs
    dates: Monday-aligned week arithmetic (data week, comparison week)
    exceptions: Custom exception hierarchy for error handling
    logging: Logging configuration
    tracing: Span-based tracing port injected into components

Usage:
    from core.config import settings
    from core.database import async_session_maker
    from core.exceptions import RegistryUnavailableError
    from core.logging import setup_logging
    from core.tracing import LoggingTracer

Example:
    setup_logging()
    
    tracer = LoggingTracer()
    with tracer.span("db.query", "select unprocessed") as span:
        async with async_session_maker() as session:
            ...
        span.set_data("rows", 42)
"""

__all__ = [
    "settings",
    "async_session_maker",
    "setup_logging",
    "LoggingTracer",
    "JobLock",
    # Exceptions
    "PipelineException",
    "RegistryError",
    "RegistryUnavailableError",
    "RateLimitError",
    "RegistryResponseError",
    "StoreError",
    "DatabaseError",
    "DatabaseConnectionError",
    "TimeSeriesError",
    "QueueError",
    "BatchJobError",
    "ConcurrentExecutionSkippedError",
    "InputValidationError",
    "RetryableError",
    "NonRetryableError",
]
