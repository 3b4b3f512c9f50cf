"""
FastAPI application entry point.

This module initializes the FastAPI application, configures middleware,
registers the API routers and runs the import worker pool alongside the API.
"""
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .api.routers import imports
from .core.config import settings
from .core.logging_config import configure_logging
from .db.session import create_tables
from .domain.imports.workers import ImportSupervisor, ImportWorkerPool

# Ensure logging is configured before the application starts serving requests.
configure_logging(settings.log_level, log_sql=settings.log_sql)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables, then run the worker pool and supervisor for the app's lifetime."""
    if os.getenv("SKIP_DB_INIT") == "1":
        logger.info("SKIP_DB_INIT=1 detected; skipping database bootstrap and import workers")
        yield
        return

    try:
        create_tables()
        logger.info("Database tables ready")
    except Exception:
        logger.exception("Failed to initialize database tables; the application cannot start")
        raise

    pool = ImportWorkerPool()
    supervisor = ImportSupervisor(pool)
    app.state.import_pool = pool
    supervisor.start()
    logger.info("Import workers started (%d threads, id %s)", pool.max_workers, pool.worker_id)

    yield  # Application runs here

    supervisor.stop()
    # Waits for running imports; one cut off by a hard exit is resumed by the next stale sweep
    pool.shutdown(wait=True, cancel_running=False)
    app.state.import_pool = None


app = FastAPI(
    title="Bulk Job Import API",
    version="1.0.0",
    description="Bulk import of job postings from CSV, Excel and JSON uploads",
    lifespan=lifespan,
)

# Allow origins from environment variable or defaults for development
allowed_origins = os.getenv("ALLOWED_ORIGINS", "http://localhost:5173,http://localhost:3000").split(",")
allowed_origins = [origin.strip() for origin in allowed_origins]

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(imports.router)


@app.get("/")
async def root():
    return {"message": "Bulk Job Import API", "version": "1.0.0"}


@app.get("/health")
async def health_check():
    return {"status": "healthy", "timestamp": datetime.now(timezone.utc).isoformat()}
