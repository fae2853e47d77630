"""
Level Import Service - Main Application

FastAPI application that serves:
- REST API endpoints for submitting and polling level import jobs
- Draft read / publish endpoints for the levels those jobs produce
- Health check endpoint

The import worker runs inside the same process as an asyncio background
task.  Each app owns its runtime on ``app.state.queue_runtime``; the
lifespan handler starts and stops it.  Set ``IMPORT_QUEUE_ENABLED=false`` to
run an API-only instance alongside dedicated worker processes.
"""

import sys
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from loguru import logger

from level_import.config import (
    APP_ENV,
    APP_HOST,
    APP_PORT,
    APP_VERSION,
    DEBUG,
    IMPORT_QUEUE_ENABLED,
    LOG_LEVEL,
    ensure_directories,
)
from level_import.database import init_db
from level_import.routes.api import router as api_router
from level_import.services.capabilities import get_audio_import_capability
from level_import.services.queue import ImportQueueRuntime

# ---------------------------------------------------------------------------
# Logging setup (stdout only)
# ---------------------------------------------------------------------------
logger.remove()

logger.add(
    sys.stdout,
    level="DEBUG" if DEBUG else LOG_LEVEL,
    format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>",
    colorize=True,
)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------
@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan handler.

    On startup:
        1. Create data directories
        2. Initialize the SQLite database
        3. Log the audio import capability
        4. Start the import queue runtime

    On shutdown:
        5. Stop the import queue runtime
    """
    # --- Startup ---
    logger.info("🚀 Starting Level Import Service v{}", APP_VERSION)
    logger.info("📋 Environment: {} | Debug: {}", APP_ENV, DEBUG)

    # Step 1: Ensure local directories exist
    ensure_directories()
    logger.info("📁 Data directories initialized")

    # Step 2: Initialize database (creates tables and indexes)
    try:
        init_db()
    except Exception as e:
        logger.critical("❌ Database initialization failed: {}", e)
        raise

    # Step 3: Report media tooling
    capability = get_audio_import_capability(force_refresh=True)
    if capability.available:
        logger.info("🎧 {}", capability.message)
    else:
        logger.warning("⚠️ {}", capability.message)

    # Step 4: Start the import worker
    runtime: ImportQueueRuntime = app.state.queue_runtime
    if IMPORT_QUEUE_ENABLED:
        runtime.start()
    else:
        logger.info("ℹ️ Import queue disabled on this instance")

    logger.success("✅ Application ready — listening on {}:{}", APP_HOST, APP_PORT)

    yield

    # --- Shutdown ---
    logger.info("🛑 Shutting down Level Import Service …")

    # Step 5: Stop the import worker
    await runtime.stop()

    logger.info("👋 Shutdown complete")


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------
def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""

    app = FastAPI(
        title="Level Import Service",
        description=(
            "Converts uploaded MIDI and audio files into playable level charts "
            "through an asynchronous import pipeline."
        ),
        version=APP_VERSION,
        lifespan=lifespan,
        docs_url="/docs" if DEBUG else None,
        redoc_url="/redoc" if DEBUG else None,
    )

    # One queue runtime per app; the lifespan starts and stops it
    app.state.queue_runtime = ImportQueueRuntime()

    # ------------------------------------------------------------------
    # Request logging middleware
    # ------------------------------------------------------------------
    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        """Log every incoming HTTP request with timing information."""
        start = time.time()
        try:
            response = await call_next(request)
        except Exception as exc:
            duration = round(time.time() - start, 3)
            logger.error(
                "❌ {method} {path} — unhandled error after {duration}s: {exc}",
                method=request.method,
                path=request.url.path,
                duration=duration,
                exc=exc,
            )
            raise

        duration = round(time.time() - start, 3)
        status = response.status_code
        if status >= 500:
            log = logger.error
        elif status >= 400:
            log = logger.warning
        else:
            log = logger.info
        log(
            "📤 {method} {path} — {status} [{duration}s]",
            method=request.method,
            path=request.url.path,
            status=status,
            duration=duration,
        )
        return response

    # ------------------------------------------------------------------
    # Register routers
    # ------------------------------------------------------------------
    app.include_router(api_router)  # /api/*  JSON endpoints

    return app


# ---------------------------------------------------------------------------
# Create the app instance (used by Uvicorn)
# ---------------------------------------------------------------------------
app = create_app()


# ---------------------------------------------------------------------------
# Direct execution (development)
# ---------------------------------------------------------------------------
if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "level_import.main:app",
        host=APP_HOST,
        port=APP_PORT,
        reload=DEBUG,
        log_level="debug" if DEBUG else "info",
    )
