# app/main.py
"""
FastAPI application with storage lifecycle management.
"""

import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request

from app.config import settings
from app.db.pool import db_pool
from app.infrastructure.observability.logging import get_logger, setup_logging
from app.routes import assessment, healing, health

# Setup logging before creating the app
setup_logging(log_level=settings.log_level)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handle application startup and shutdown with proper resource management."""

    logger.info(
        "Application starting",
        environment=settings.environment,
        debug=settings.debug,
        storage_backend=settings.STORAGE_BACKEND,
    )

    startup_tasks = []

    try:
        if settings.uses_postgres():
            logger.info("Initializing database pool")
            await db_pool.initialize()
            startup_tasks.append("database_pool")

        logger.info("All services initialized successfully", services=startup_tasks)

    except Exception as e:
        logger.error("Failed to initialize services", error=str(e), completed_tasks=startup_tasks)

        if "database_pool" in startup_tasks:
            try:
                await db_pool.close()
            except Exception as cleanup_error:
                logger.error("Error cleaning up database pool", error=str(cleanup_error))

        raise

    yield

    logger.info("Application shutting down")

    if "database_pool" in startup_tasks:
        try:
            logger.info("Closing database pool")
            await db_pool.close()
        except Exception as e:
            logger.error("Error closing database pool", error=str(e))
            return

    logger.info("All services closed successfully")


app = FastAPI(
    title="Infrastructure Healing Engine",
    description="Infrastructure assessment and graduated recovery for email-sending infrastructure",
    version="0.1.0",
    lifespan=lifespan,
)

# Include routers
app.include_router(health.router)
app.include_router(assessment.router)
app.include_router(healing.router)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log HTTP requests with timing."""
    start_time = time.time()
    response = await call_next(request)
    process_time = (time.time() - start_time) * 1000

    logger.info(
        "HTTP request completed",
        method=request.method,
        path=request.url.path,
        status_code=response.status_code,
        duration_ms=round(process_time, 2),
    )
    return response


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
