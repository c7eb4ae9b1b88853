"""
FastAPI Application Entry Point.

This is the main application file for the Freight Dispatch Backend.
"""

from contextlib import asynccontextmanager
from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from freight_backend.app.core.config import settings
from freight_backend.app.core.logging_config import setup_logging
from freight_backend.app.core.observability import ObservabilityMiddleware
from freight_backend.app.core.redis_client import redis_client, ping_redis
from freight_backend.app.api.v1.router import router as api_v1_router
from freight_backend.app.db.session import engine, AsyncSessionLocal, Base
from freight_backend.app.services.dispatch_core import DispatchCore
from freight_backend.app.core.exceptions import (
    AppException,
    app_exception_handler,
    http_exception_handler,
    validation_exception_handler,
    generic_exception_handler
)

# Import models to ensure they are registered with Base
from freight_backend.app.models.broadcast import Broadcast  # noqa: F401
from freight_backend.app.models.reservation import Reservation  # noqa: F401
from freight_backend.app.models.driver_assignment import DriverAssignment  # noqa: F401
from freight_backend.app.models.tracking_session import TrackingSession  # noqa: F401
from freight_backend.app.models.tracking_position import TrackingPosition  # noqa: F401
from freight_backend.app.models.audit_log import AuditLog  # noqa: F401
from freight_backend.app.models.dlq import DeadLetterQueue  # noqa: F401
from freight_backend.app.models.notification import Notification  # noqa: F401
from freight_backend.app.models.archived_tracking_position import ArchivedTrackingPosition  # noqa: F401
from freight_backend.app.models.archived_broadcast import ArchivedBroadcast  # noqa: F401


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for application startup/shutdown.

    1. Configures logging and creates database tables.
    2. Builds the dispatch core and restores pending deadline timers.
    3. Stops timers, the sweeper and background deliveries on shutdown.
    """
    setup_logging(settings.log_level, settings.log_json)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    await ping_redis()

    core = DispatchCore(AsyncSessionLocal, settings=settings, redis=redis_client)
    app.state.dispatch_core = core
    await core.start()
    yield
    await core.shutdown()
    await engine.dispose()


# Initialize FastAPI application
app = FastAPI(
    title=settings.app_name,
    version=settings.api_version,
    debug=settings.debug,
    description="Real-time freight dispatch: broadcasts, truck claims, driver offers and live tracking",
    lifespan=lifespan,
)

app.add_middleware(ObservabilityMiddleware)

# Register global exception handlers
app.add_exception_handler(AppException, app_exception_handler)
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(Exception, generic_exception_handler)


@app.get("/health", tags=["Health"])
async def health_check():
    """
    Health check endpoint.

    Returns:
        dict: Status and application information
    """
    return {
        "status": "healthy",
        "app_name": settings.app_name,
        "version": settings.api_version,
    }


# Include API v1 router
app.include_router(api_v1_router, prefix=f"/{settings.api_version}")


@app.get("/", tags=["Root"])
async def root():
    return {
        "message": "Welcome to Freight Dispatch Backend API",
        "docs": "/docs",
        "health": "/health",
    }
