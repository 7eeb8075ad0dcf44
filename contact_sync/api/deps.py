"""
FastAPI Dependency Injection

Endpoints reach the service container built by the application lifespan
through these dependencies, so tests can swap in a container of fakes.
"""

from fastapi import HTTPException, Request

from contact_sync.orchestrator import SyncOrchestrator
from contact_sync.services import ServiceContainer


def get_container(request: Request) -> ServiceContainer:
    """FastAPI dependency for the application's service container."""
    container = getattr(request.app.state, "container", None)
    if container is None:
        raise HTTPException(status_code=503, detail="Service is starting up")
    return container


def get_orchestrator(request: Request) -> SyncOrchestrator:
    """FastAPI dependency for the sync orchestrator."""
    return get_container(request).orchestrator
