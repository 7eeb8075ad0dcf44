"""
Sync API Schemas

Pydantic models for sync job requests and responses.
"""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from contact_sync.models import JobError, SyncMode, SyncStatus


class StartSyncRequest(BaseModel):
    """Request to start a contact sync for a page."""

    page_id: str = Field(description="Internal ID of the connected page")
    mode: SyncMode = Field(
        default=SyncMode.FULL,
        description="FULL, CONTACTS_ONLY, ANALYSIS_ONLY or SELECTED_SUBSET",
    )
    contact_ids: Optional[List[str]] = Field(
        default=None,
        min_length=1,
        max_length=5000,
        description="Contacts to re-sync (SELECTED_SUBSET only)",
    )


class StartSyncResponse(BaseModel):
    """Response when starting (or joining) a sync job."""

    job_id: str
    status: SyncStatus
    message: str


class CancelSyncResponse(BaseModel):
    job_id: str
    status: SyncStatus


class SyncJobResponse(BaseModel):
    """Progress of a sync job, as polled by clients."""

    id: str
    facebook_page_id: str
    status: SyncStatus
    mode: SyncMode
    total_contacts: int = 0
    synced_contacts: int = 0
    failed_contacts: int = 0
    errors: List[JobError] = Field(default_factory=list)
    token_expired: bool = False
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
