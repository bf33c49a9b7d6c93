"""
FastAPI application entry point.

This module initializes the FastAPI application, configures middleware,
and registers all API routers.
"""
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .api.dependencies import get_registry
from .api.routers import export, imports, subjects
from .core.config import settings
from .core.logging_config import configure_logging
from .db.session import create_all_tables
from .domain.imports.jobs import ImportJobRegistry, shutdown_job_registry

# Ensure logging is configured before the application starts serving requests.
configure_logging(settings.log_level, settings.import_log_level or None)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables on startup; stop the import job workers on shutdown."""
    if os.getenv("SKIP_DB_INIT") == "1":
        logger.info("SKIP_DB_INIT=1 detected; skipping database bootstrap during startup")
    else:
        try:
            create_all_tables()
            logger.info("Database tables ready")
        except Exception:
            logger.exception("Failed to initialize database tables; the application cannot start")
            raise

    yield

    shutdown_job_registry(wait=False)


app = FastAPI(
    title="Folio Book Import API",
    version="1.0.0",
    description="Bulk import and export of books and their summary transactions from spreadsheets",
    lifespan=lifespan
)

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
app.include_router(export.router)
app.include_router(subjects.router)


@app.get("/")
async def root():
    return {
        "message": "Folio Book Import API",
        "version": "1.0.0",
        "endpoints": ["/api/book-import", "/api/book-import/export", "/api/subjects"],
    }


@app.get("/health")
async def health_check(registry: ImportJobRegistry = Depends(get_registry)):
    """Liveness plus a count of import jobs that have not finished yet."""
    running = [job for job in registry.list_jobs() if not job.is_finished]
    return {
        "status": "healthy",
        "timestamp": datetime.now().isoformat(),
        "service": "folio-book-import",
        "active_import_jobs": len(running),
    }
