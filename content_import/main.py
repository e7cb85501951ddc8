"""
FastAPI application entry point.

This module initializes the FastAPI application, builds the import services
during startup, and registers all API routers.
"""
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

from fastapi import FastAPI

from .api.dependencies import ImportServices, build_services
from .api.routers import categories, imports, jobs
from .core.config import settings
from .core.logging_config import configure_logging

# Ensure logging is configured before the application starts serving requests.
configure_logging(settings.log_level, settings.log_file)

logger = logging.getLogger(__name__)


def create_app(services: Optional[ImportServices] = None) -> FastAPI:
    """
    Build the application.

    Args:
        services: Pre-built services, mainly for tests. When omitted they are
            built from settings at startup.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Manage application lifecycle - startup and shutdown events."""
        app.state.services = services or build_services(settings)
        processor = app.state.services.processor

        recovered = processor.recover_interrupted_jobs()
        removed = processor.cleanup_old_jobs()
        backups = app.state.services.backup_store.cleanup_old_backups(settings.backup_retention_days)
        logger.info(
            "Import services ready (jobs=%s, storage=%s); %d interrupted jobs failed, "
            "%d old jobs and %d old backups removed",
            settings.job_store_backend,
            settings.storage_backend,
            recovered,
            removed,
            backups,
        )

        yield  # Application runs here

        await processor.shutdown()
        logger.info("Import services stopped")

    app = FastAPI(
        title="Content Import API",
        version="1.0.0",
        description="Bulk import of questions, flashcards and learning paths",
        lifespan=lifespan,
    )

    app.include_router(imports.router)
    app.include_router(jobs.router)
    app.include_router(categories.router)

    @app.get("/health")
    async def health_check():
        return {
            "status": "healthy",
            "timestamp": datetime.now().isoformat(),
            "service": "content-import-api",
        }

    return app


app = create_app()
