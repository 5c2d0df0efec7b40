"""
Session Scheduling API - Main Application Entry Point

Booking engine for a single-business training studio:
- Availability from weekly templates and date exceptions
- Concurrency-safe slot reservation with optimistic locking
- Subscription quota / session credit / staff override eligibility
- Background calendar mirroring and idempotent payment webhooks
- Structured logging with request correlation and Prometheus metrics

Startup order matters for the sync worker: it is started after logging and
the cache are ready and stopped before the database engine is disposed, so
an in-flight sync never runs against a closed pool.
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from app.core.config import get_settings
from app.core.logging import setup_logging, get_logger
from app.core.metrics import metrics_endpoint
from app.api.router import api_router
from app.api.middleware import RequestLoggingMiddleware
from app.db.session import engine
from app.services.cache_service import get_redis, close_redis, get_cache_stats
from app.workers.calendar_sync_worker import get_sync_queue

settings = get_settings()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    logger.info(
        "application_starting",
        app=settings.APP_NAME,
        version=settings.APP_VERSION,
        environment=settings.ENVIRONMENT,
        payments_configured=settings.payments_configured,
        google_calendar_configured=settings.google_calendar_configured,
    )

    if await get_redis():
        logger.info("redis_ready")
    else:
        logger.warning("redis_unavailable", message="Serving availability without cache")

    sync_queue = get_sync_queue()
    if settings.CALENDAR_SYNC_ENABLED:
        sync_queue.start()
    else:
        logger.info("calendar_sync_disabled", message="Bookings stay pending until a manual resync")

    yield

    await sync_queue.stop()
    await close_redis()
    await engine.dispose()
    logger.info("application_shutdown")


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Scheduling and booking API with capacity-safe reservations",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(RequestLoggingMiddleware)

app.include_router(api_router)


@app.get("/metrics", include_in_schema=False)
async def metrics():
    return metrics_endpoint()


async def _database_status() -> str:
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return "connected"
    except (SQLAlchemyError, OSError) as e:
        logger.error("health_database_unreachable", error=str(e))
        return "unreachable"


@app.get("/health", tags=["Health"])
async def health_check():
    """
    Liveness plus dependency status. The cache and the calendar worker are
    optional, so only the database decides `healthy` vs `degraded`.
    """
    database = await _database_status()
    sync_queue = get_sync_queue()
    return {
        "status": "healthy" if database == "connected" else "degraded",
        "version": settings.APP_VERSION,
        "environment": settings.ENVIRONMENT,
        "database": database,
        "cache": await get_cache_stats(),
        "calendar_sync": {
            "enabled": settings.CALENDAR_SYNC_ENABLED,
            "running": sync_queue.running,
            "queued": sync_queue.queue.qsize(),
        },
        "payments": {"configured": settings.payments_configured},
    }


@app.get("/", tags=["Root"])
async def root():
    return {
        "message": f"Welcome to {settings.APP_NAME}",
        "version": settings.APP_VERSION,
        "docs": "/docs",
    }
