"""
Health Endpoints

`/health` answers as long as the process is up. `/health/workers` reports
on the background sync machinery and needs a configured service container.
"""

from datetime import datetime, timezone
from typing import Dict

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from contact_sync.api.deps import get_container
from contact_sync.services import ServiceContainer


router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    status: str
    timestamp: datetime


class WorkerHealthResponse(BaseModel):
    """Supervisor counters plus transcript cache stats."""
    running_tasks: int
    failed_tasks: int
    message_cache: Dict[str, int]


@router.get("/health", response_model=HealthResponse)
def health_check():
    """Liveness probe. Touches neither the database nor the classifier."""
    return HealthResponse(status="ok", timestamp=datetime.now(timezone.utc))


@router.get("/health/workers", response_model=WorkerHealthResponse)
def worker_health_check(container: ServiceContainer = Depends(get_container)):
    supervisor = container.supervisor
    return WorkerHealthResponse(
        running_tasks=supervisor.pending,
        failed_tasks=supervisor.failure_count,
        message_cache=container.message_cache.stats(),
    )
