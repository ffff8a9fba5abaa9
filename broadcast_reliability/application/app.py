"""
FastAPI Application Entry Point

Operational API for the broadcast reliability layer: enqueueing, lane and
dead-letter status, manual retries, recovery statistics, health and
Prometheus metrics.

The lane consumer and the sweeps run in their own processes (see
broadcast_reliability.runner); this app only reads and mutates state in
Redis.
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from broadcast_reliability.application.api.routes import broadcasts_router, health_router
from broadcast_reliability.broadcasting.service import get_broadcast_service
from broadcast_reliability.core.config.constants import Stage
from broadcast_reliability.core.config.settings import get_settings
from broadcast_reliability.core.exceptions import (
    BroadcastReliabilityError,
    CacheError,
    DeadLetterRecordNotFoundError,
    QueueError,
    RateLimitExceededError,
)
from broadcast_reliability.core.logging.logger import get_logger, setup_logging
from broadcast_reliability.infrastructure.cache.redis_client import close_redis

logger = get_logger(__name__)


# ============================================================================
# Application Lifespan
# ============================================================================


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    setup_logging(log_level=settings.logging.LOG_LEVEL, log_format=settings.logging.LOG_FORMAT)

    logger.info(
        "Starting Broadcast Reliability API",
        stage=Stage.INITIALIZATION,
        environment=settings.app.ENVIRONMENT,
        version=settings.app.APP_VERSION,
    )

    try:
        await get_broadcast_service().initialize()
        logger.info("Application startup complete")

        yield

    finally:
        logger.info("Shutting down application")
        await close_redis()
        logger.info("Application shutdown complete")


# ============================================================================
# Exception Handlers
# ============================================================================


async def record_not_found_handler(request: Request, exc: DeadLetterRecordNotFoundError):
    return JSONResponse(status_code=404, content=exc.to_dict())


async def rate_limited_handler(request: Request, exc: RateLimitExceededError):
    return JSONResponse(
        status_code=429,
        content=exc.to_dict(),
        headers={"Retry-After": str(exc.retry_after)},
    )


async def unavailable_handler(request: Request, exc: BroadcastReliabilityError):
    logger.error(
        "Backing store unavailable",
        error_type=type(exc).__name__,
        error=exc.message,
        path=request.url.path,
    )
    return JSONResponse(status_code=503, content=exc.to_dict())


async def broadcast_error_handler(request: Request, exc: BroadcastReliabilityError):
    logger.error(
        f"Broadcast error: {exc.message}",
        error_type=type(exc).__name__,
        task_id=exc.task_id,
        path=request.url.path,
    )
    return JSONResponse(status_code=500, content=exc.to_dict())


# ============================================================================
# Application Factory
# ============================================================================


def create_app() -> FastAPI:
    """
    Create and configure the FastAPI application.

    Returns:
        FastAPI: Configured application instance
    """
    settings = get_settings()

    app = FastAPI(
        title=settings.app.APP_NAME,
        version=settings.app.APP_VERSION,
        description="Priority broadcast delivery with retries, dead letters and recovery",
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )

    app.add_exception_handler(DeadLetterRecordNotFoundError, record_not_found_handler)
    app.add_exception_handler(RateLimitExceededError, rate_limited_handler)
    app.add_exception_handler(QueueError, unavailable_handler)
    app.add_exception_handler(CacheError, unavailable_handler)
    app.add_exception_handler(BroadcastReliabilityError, broadcast_error_handler)

    app.include_router(health_router)
    app.include_router(broadcasts_router)

    @app.get("/", tags=["Root"])
    async def root():
        return {
            "name": settings.app.APP_NAME,
            "version": settings.app.APP_VERSION,
            "environment": settings.app.ENVIRONMENT,
            "docs": "/docs",
            "health": "/health",
        }

    return app
