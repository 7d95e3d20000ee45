"""FastAPI application entry point"""
import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from sadqa.core import otel
from sadqa.core.config import settings
from sadqa.core.logging import setup_logging
from sadqa.core.middleware import access_log_middleware, global_exception_handler, setup_cors_middleware
from sadqa.db import redis as redis_store
from sadqa.db.session import engine, init_db

# Import routers
from sadqa.api import admin, donations, monitoring, subscriptions, webhooks

setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan event handler for startup and shutdown"""
    # Startup
    otel_initialized = otel.initialize_otel()
    if otel_initialized:
        if otel.setup_otel_logging():
            logger.info(f"OpenTelemetry fully initialized, exporting to {settings.OTEL_EXPORTER_OTLP_ENDPOINT}")
        else:
            logger.warning("OpenTelemetry metrics/traces initialized but logging setup failed")
        otel.instrument_sqlalchemy(engine)
    else:
        logger.info("OpenTelemetry not configured - running without distributed tracing")

    logger.info("Initializing database...")
    try:
        init_db()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        raise

    logger.info("Testing Redis connection...")
    try:
        redis_store.ping()
        logger.info("Redis connection successful")
    except Exception as e:
        logger.error(f"Redis connection failed: {e}")
        raise

    background_tasks = []
    if settings.SCHEDULER_ENABLED:
        from sadqa.tasks.scheduler import subscription_expiry_task, stale_payment_recheck_task

        logger.info("Starting scheduler tasks...")
        background_tasks.append(asyncio.create_task(subscription_expiry_task()))
        background_tasks.append(asyncio.create_task(stale_payment_recheck_task()))
        logger.info("Scheduler tasks started")

    yield

    # Shutdown
    logger.info("Shutting down...")
    for task in background_tasks:
        task.cancel()


# Create FastAPI app
app = FastAPI(
    title="Sadqa Backend",
    description="Recurring donation lifecycle and payment reconciliation",
    version="1.0.0",
    lifespan=lifespan
)

# Instrument FastAPI and HTTPX with OpenTelemetry (middleware must be added before startup)
if settings.OTEL_EXPORTER_OTLP_ENDPOINT:
    otel.instrument_fastapi(app)
    otel.instrument_httpx()

setup_cors_middleware(app)
app.middleware("http")(access_log_middleware)
app.add_exception_handler(Exception, global_exception_handler)

# Include routers
app.include_router(webhooks.router)
app.include_router(subscriptions.router)
app.include_router(donations.router)
app.include_router(admin.router)
app.include_router(monitoring.router)
