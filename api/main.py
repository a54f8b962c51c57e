"""
FastAPI application initialization
"""

from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from api.routes import health, packages, frameworks
from api.middleware import RequestContextMiddleware
from core.config import settings
from core.database import async_session_maker
from core.exceptions import InputValidationError, PipelineException
from core.logging import setup_logging
from core.redis import close_redis, get_redis
from analytics.adoption import TfmAdoptionRefresher
from analytics.trending import TrendingSnapshotRefresher
from ingestion.extractors.registry_client import RegistryClient
from ingestion.publisher import DailyDownloadPublisher
from ingestion.queue import WorkQueue
from ingestion.scheduler import PipelineScheduler
from ingestion.worker import DownloadWorkerPool
from storage.timeseries import TimeSeriesStore
import logging

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Open the stores and, when enabled, run the worker pool and the
    scheduler in this process. The DuckDB file allows a single writer, so
    the process serving reads also owns every write to it.
    """
    setup_logging()
    logger.info("Starting package trends service")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Database: {settings.DATABASE_URL.split('@')[1] if '@' in settings.DATABASE_URL else 'configured'}")

    timeseries = TimeSeriesStore().connect()
    redis = get_redis()
    queue = WorkQueue(redis)
    registry = RegistryClient()

    app.state.timeseries = timeseries
    app.state.worker_pool = None
    scheduler = None

    if settings.WORKERS_ENABLED:
        app.state.worker_pool = DownloadWorkerPool(queue, registry, async_session_maker, timeseries)
        app.state.worker_pool.start()

    if settings.SCHEDULER_ENABLED:
        scheduler = PipelineScheduler(
            publisher=DailyDownloadPublisher(async_session_maker, queue, redis),
            trending=TrendingSnapshotRefresher(async_session_maker, timeseries, redis),
            adoption=TfmAdoptionRefresher(async_session_maker, timeseries, redis),
            queue=queue,
            timeseries=timeseries,
        )
        scheduler.start()

    try:
        yield
    finally:
        logger.info("Shutting down package trends service")
        if scheduler is not None:
            scheduler.stop()
        if app.state.worker_pool is not None:
            await app.state.worker_pool.stop()
        await registry.aclose()
        await close_redis()
        timeseries.close()


# Create FastAPI app
app = FastAPI(
    title="Package Trends API",
    description="Daily package download history and weekly trending packages",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)

app.add_middleware(RequestContextMiddleware)


@app.exception_handler(InputValidationError)
async def input_validation_handler(request: Request, exc: InputValidationError):
    return JSONResponse(
        status_code=400,
        content={
            "error": "invalid_request",
            "detail": exc.message,
            "request_id": getattr(request.state, "request_id", None),
        },
    )


@app.exception_handler(PipelineException)
async def pipeline_exception_handler(request: Request, exc: PipelineException):
    request_id = getattr(request.state, "request_id", None)
    logger.error(f"[{request_id}] {exc}")
    return JSONResponse(
        status_code=503,
        content={"error": "service_unavailable", "detail": exc.message, "request_id": request_id},
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    request_id = getattr(request.state, "request_id", None)
    logger.exception(f"[{request_id}] Unhandled error: {exc}")
    return JSONResponse(
        status_code=500,
        content={"error": "internal_error", "detail": "Internal server error", "request_id": request_id},
    )


# Include routers
app.include_router(health.router)
app.include_router(packages.router)
app.include_router(frameworks.router)


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "message": "Package Trends API",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/health",
        "endpoints": {
            "search": "/api/package/search?q=",
            "history": "/api/package/history/{id}?months=3",
            "trending": "/api/package/trending?limit=10",
            "frameworks": "/api/framework/available",
            "adoption": "/api/framework/adoption?tfms=&families="
        }
    }
