"""
Sync API Endpoints

Start, poll and cancel background contact sync jobs.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException

from contact_sync.api.deps import get_orchestrator
from contact_sync.api.schemas.sync import (
    CancelSyncResponse,
    StartSyncRequest,
    StartSyncResponse,
    SyncJobResponse,
)
from contact_sync.errors import JobNotFoundError, PageNotFoundError
from contact_sync.orchestrator import SyncOrchestrator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/sync", tags=["sync"])


@router.post("/start", response_model=StartSyncResponse)
async def start_sync(
    request: StartSyncRequest,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    """
    Start a sync job for a page.

    Returns immediately; poll /api/sync/status/{job_id} for progress. If the
    page already has a job running, that job is returned instead.
    """
    try:
        job, created = await orchestrator.start_or_join(request.page_id, request.mode, request.contact_ids)
    except PageNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return StartSyncResponse(
        job_id=job.id,
        status=job.status,
        message="Sync started" if created else "Sync already in progress",
    )


@router.get("/status/{job_id}", response_model=SyncJobResponse)
async def get_sync_status(
    job_id: str,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    """Current progress of a sync job."""
    try:
        job = await orchestrator.get_job_status(job_id)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail=f"Sync job {job_id} not found")
    return SyncJobResponse(**job.model_dump())


@router.post("/{job_id}/cancel", response_model=CancelSyncResponse)
async def cancel_sync(
    job_id: str,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    """
    Request cancellation of a sync job.

    The job stops at its next checkpoint. Cancelling a job that already
    finished leaves it unchanged and reports its status.
    """
    try:
        job = await orchestrator.cancel(job_id)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail=f"Sync job {job_id} not found")
    return CancelSyncResponse(job_id=job.id, status=job.status)


@router.get("/latest/{page_id}", response_model=SyncJobResponse)
async def get_latest_sync(
    page_id: str,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    """Most recently created sync job for a page."""
    job = await orchestrator.get_latest_job(page_id)
    if job is None:
        raise HTTPException(status_code=404, detail=f"No sync jobs for page {page_id}")
    return SyncJobResponse(**job.model_dump())
