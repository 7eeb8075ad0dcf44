"""
Contact Sync API - Main Application

FastAPI application exposing the sync job control surface.

Run with:
    uvicorn contact_sync.api.main:app --reload --port 8000

API Documentation available at:
    - Swagger UI: http://localhost:8000/docs
    - ReDoc: http://localhost:8000/redoc
"""

import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from contact_sync.api.routers import health, sync
from contact_sync.interfaces import SyncStore
from contact_sync.logging_utils import configure_file_logging, configure_safe_logging
from contact_sync.services import ServiceContainer

# Sync jobs outlive the request that started them; their stack traces go to
# this file as well as stdout.
LOG_FILE = os.getenv("CONTACT_SYNC_LOG_FILE", "/tmp/contact-sync-app.log")

configure_safe_logging()
configure_file_logging(LOG_FILE)

logger = logging.getLogger(__name__)

STALE_JOB_MESSAGE = "Sync interrupted by server restart. You can safely start a new sync."


async def cleanup_stale_sync_jobs(store: SyncStore) -> int:
    """
    Mark any pending or in-progress sync jobs as FAILED on startup.

    This handles the case where the server was restarted while a sync was
    running, leaving a job that would otherwise block new syncs for its page.

    Note: This assumes single-instance deployment. Multi-instance deployments
    would require a heartbeat mechanism to distinguish truly stale jobs.

    Returns:
        Number of stale jobs cleaned up, or -1 if cleanup failed.
    """
    try:
        stale_ids = await store.fail_stale_jobs(STALE_JOB_MESSAGE)
    except Exception as e:
        logger.error(f"Failed to cleanup stale sync jobs (stale jobs may block new syncs): {e}")
        return -1

    if stale_ids:
        logger.warning(f"Cleaned up {len(stale_ids)} stale sync job(s) from previous session: {stale_ids}")
    return len(stale_ids)


def create_app(container: Optional[ServiceContainer] = None) -> FastAPI:
    """Build the application. A container passed in is used as is and not closed."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = app.state.container is None
        if owned:
            app.state.container = ServiceContainer.create()
        await cleanup_stale_sync_jobs(app.state.container.store)
        try:
            yield
        finally:
            if owned:
                await app.state.container.aclose()
                app.state.container = None

    app = FastAPI(
        lifespan=lifespan,
        title="Contact Sync API",
        description="""
        Background sync of inbox conversations into contacts, with AI lead
        scoring and automatic pipeline stage assignment.

        ## Features

        - **Sync Control**: Start, poll and cancel sync jobs per page
        - **Modes**: Full sync, contacts only, re-analysis only, or a selected subset
        """,
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
    )
    app.state.container = container

    app.include_router(health.router)
    app.include_router(sync.router)

    @app.get("/")
    def root():
        """Root endpoint with API information."""
        return {
            "name": "Contact Sync API",
            "version": "0.1.0",
            "docs": "/docs",
            "health": "/health",
        }

    return app


app = create_app()
