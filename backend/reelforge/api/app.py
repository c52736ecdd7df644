"""FastAPI application setup with lifespan and exception handlers."""

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

from reelforge import __version__, configure_logging, validate_dependencies
from reelforge.api.routes import router
from reelforge.config import settings
from reelforge.db import init_database, shutdown
from reelforge.services.errors import PipelineError
from reelforge.workers.tasks import watchdog_loop

logger = logging.getLogger(__name__)

# HTTP status per error category for errors that escape a handler
CATEGORY_STATUS = {
    "input_validation": 422,
    "configuration": 503,
    "state_consistency": 409,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager.

    Startup:
        - Validate system dependencies (ffmpeg)
        - Initialize database schema
        - Start the watchdog loop when enabled

    Shutdown:
        - Stop the watchdog
        - Close database connections
    """
    # Startup
    configure_logging()
    logger.info("Starting reelforge API...")
    validate_dependencies()
    await init_database()

    watchdog_task = None
    if settings.pipeline.watchdog_enabled:
        watchdog_task = asyncio.create_task(watchdog_loop())
    logger.info("API startup complete")

    yield

    # Shutdown
    logger.info("Shutting down reelforge API...")
    if watchdog_task is not None:
        watchdog_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await watchdog_task
    await shutdown()
    logger.info("API shutdown complete")


# Create FastAPI application
app = FastAPI(
    title="reelforge API",
    version=__version__,
    lifespan=lifespan,
)

# Include router with all endpoints
app.include_router(router)

# Durable media: the public_base_url providers and clients fetch from
settings.storage.media_dir.mkdir(parents=True, exist_ok=True)
app.mount("/media", StaticFiles(directory=str(settings.storage.media_dir)), name="media")


@app.exception_handler(PipelineError)
async def pipeline_exception_handler(request: Request, exc: PipelineError):
    status = CATEGORY_STATUS.get(exc.category, 500)
    logger.warning(f"{request.method} {request.url.path} -> {status}: {exc.message}")
    return JSONResponse(
        status_code=status,
        content={"error": exc.category, "detail": exc.message},
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception):
    """Catch-all exception handler to prevent stack traces in API responses."""
    logger.error(f"Unhandled exception in {request.method} {request.url.path}: {type(exc).__name__}: {str(exc)}")
    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal server error",
            "detail": str(exc),
        }
    )
