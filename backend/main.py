"""
FastAPI application entry point for Thumbkeeper

Initializes the FastAPI app, registers routers, and sets up startup/shutdown events.
"""
from contextlib import asynccontextmanager
from fastapi import FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from thumbkeeper.core.config import settings
from thumbkeeper.core.logging_config import setup_logging, get_logger
from thumbkeeper.core.metrics import init_metrics, get_metrics, get_content_type
from thumbkeeper.middleware.logging_middleware import RequestLoggingMiddleware
from thumbkeeper.api.v1.files import router as files_router
from thumbkeeper.api.v1.media import router as media_router
from thumbkeeper.api.v1.repair import router as repair_router
from thumbkeeper.api.v1.storage import router as storage_router
from thumbkeeper.services.blob_store import get_blob_store
from thumbkeeper.services.circuit_breaker import get_circuit_breaker
from thumbkeeper.services.frame_extractor import check_ffmpeg_available
from thumbkeeper.services.repair_scanner import RepairInProgressError, run_repair_scan

# Application version
APP_VERSION = "1.0.0"

# Initialize structured JSON logging
setup_logging()
logger = get_logger(__name__)

# Initialize Prometheus metrics
init_metrics(version=APP_VERSION)

# Global scheduler instance
scheduler: AsyncIOScheduler = None


async def scheduled_repair_job():
    """
    Periodic storage repair scan.

    Runs every REPAIR_INTERVAL_MINUTES when REPAIR_SCHEDULE_ENABLED is set.
    Skips quietly when a manually triggered scan is still running.
    """
    try:
        stats = await run_repair_scan()
        logger.info(
            f"Scheduled repair complete: {stats.fixed} fixed, {stats.errors} errors",
            extra={
                "event_type": "scheduled_repair_complete",
                **stats.to_dict()
            }
        )
    except RepairInProgressError:
        logger.info(
            "Scheduled repair skipped, a scan is already running",
            extra={"event_type": "scheduled_repair_skipped"}
        )
    except Exception as e:
        logger.error(f"Scheduled repair failed: {e}", exc_info=True)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan handler for startup and shutdown events.

    - Startup: initializes the blob store and the repair scheduler
    - Shutdown: stops the scheduler
    """
    global scheduler

    logger.info(
        "Application starting",
        extra={
            "event_type": "app_startup",
            "version": APP_VERSION,
            "log_level": settings.LOG_LEVEL,
            "debug_mode": settings.DEBUG,
            "storage_backend": settings.STORAGE_BACKEND,
        }
    )

    get_blob_store()

    ffmpeg_available, ffmpeg_msg = check_ffmpeg_available()
    if ffmpeg_available:
        logger.info(ffmpeg_msg, extra={"event_type": "ffmpeg_check", "available": True})
    else:
        # Uploads still get the placeholder thumbnail
        logger.warning(
            f"ffmpeg not available - every thumbnail will be the fallback: {ffmpeg_msg}",
            extra={"event_type": "ffmpeg_check", "available": False}
        )

    if settings.REPAIR_SCHEDULE_ENABLED:
        scheduler = AsyncIOScheduler()
        scheduler.add_job(
            scheduled_repair_job,
            trigger=IntervalTrigger(minutes=settings.REPAIR_INTERVAL_MINUTES),
            id="storage_repair",
            name="Periodic storage repair scan",
            replace_existing=True,
            max_instances=1,
        )
        scheduler.start()
        logger.info(
            "Scheduler started",
            extra={
                "event_type": "scheduler_init",
                "jobs": ["storage_repair"],
                "interval_minutes": settings.REPAIR_INTERVAL_MINUTES,
            }
        )

    yield

    logger.info(
        "Application shutting down",
        extra={"event_type": "app_shutdown", "version": APP_VERSION}
    )

    if scheduler and scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info(
            "Scheduler stopped",
            extra={"event_type": "scheduler_shutdown"}
        )

    logger.info(
        "Application shutdown complete",
        extra={"event_type": "app_shutdown_complete", "version": APP_VERSION}
    )


# Create FastAPI app
app = FastAPI(
    title="Thumbkeeper API",
    description="Video thumbnail generation and resilient media serving",
    version=APP_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID", "X-Storage-Key", "Retry-After"],
)

# Add request logging middleware
app.add_middleware(RequestLoggingMiddleware)

app.include_router(files_router, prefix=settings.API_V1_PREFIX)
app.include_router(media_router, prefix=settings.API_V1_PREFIX)
app.include_router(repair_router, prefix=settings.API_V1_PREFIX)
app.include_router(storage_router, prefix=settings.API_V1_PREFIX)


@app.get("/")
async def root():
    """Root endpoint - API status check"""
    return {
        "name": "Thumbkeeper API",
        "version": APP_VERSION,
        "status": "running"
    }


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    breaker = get_circuit_breaker().snapshot()
    return {
        "status": "healthy" if breaker.state.value == "closed" else "degraded",
        "storage_backend": settings.STORAGE_BACKEND,
        "storage_breaker": breaker.state.value,
    }


@app.get("/metrics")
async def prometheus_metrics():
    """Prometheus metrics endpoint."""
    return Response(
        content=get_metrics(),
        media_type=get_content_type()
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG,
        log_level=settings.LOG_LEVEL.lower()
    )
