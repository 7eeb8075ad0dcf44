"""Pydantic models for sync jobs, contacts, pipelines and credentials."""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

# A stage created without explicit bounds spans the whole score range.
DEFAULT_SCORE_MIN = 0
DEFAULT_SCORE_MAX = 100


class SyncStatus(str, Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in (SyncStatus.COMPLETED, SyncStatus.FAILED, SyncStatus.CANCELLED)


NON_TERMINAL_STATUSES = (SyncStatus.PENDING, SyncStatus.IN_PROGRESS)


class SyncMode(str, Enum):
    """Which stages of the per-contact pipeline a job runs.

    FULL: fetch, upsert, analyze, assign
    CONTACTS_ONLY: fetch and upsert, no classifier calls
    ANALYSIS_ONLY: re-analyze and assign contacts that already exist
    SELECTED_SUBSET: FULL restricted to an explicit set of contacts
    """

    FULL = "FULL"
    CONTACTS_ONLY = "CONTACTS_ONLY"
    ANALYSIS_ONLY = "ANALYSIS_ONLY"
    SELECTED_SUBSET = "SELECTED_SUBSET"


class UpdateMode(str, Enum):
    SKIP_EXISTING = "SKIP_EXISTING"
    UPDATE_EXISTING = "UPDATE_EXISTING"


class Platform(str, Enum):
    MESSENGER = "Messenger"
    INSTAGRAM = "Instagram"


class LeadStatus(str, Enum):
    NEW = "NEW"
    CONTACTED = "CONTACTED"
    QUALIFIED = "QUALIFIED"
    PROPOSAL_SENT = "PROPOSAL_SENT"
    NEGOTIATING = "NEGOTIATING"
    WON = "WON"
    LOST = "LOST"
    UNRESPONSIVE = "UNRESPONSIVE"


class StageType(str, Enum):
    LEAD = "LEAD"
    IN_PROGRESS = "IN_PROGRESS"
    WON = "WON"
    LOST = "LOST"


class ApiKeyStatus(str, Enum):
    ACTIVE = "ACTIVE"
    RATE_LIMITED = "RATE_LIMITED"
    DISABLED = "DISABLED"


# =============================================================================
# Sync jobs
# =============================================================================


class JobError(BaseModel):
    """One failed unit of work, as shown to polling clients."""

    platform: Optional[str] = None
    id: Optional[str] = None
    error: str
    code: Optional[int] = None


class SyncJob(BaseModel):
    """Status row for one background sync run."""

    id: str
    facebook_page_id: str
    status: SyncStatus = SyncStatus.PENDING
    mode: SyncMode = SyncMode.FULL
    total_contacts: int = 0
    synced_contacts: int = 0
    failed_contacts: int = 0
    errors: List[JobError] = Field(default_factory=list)
    token_expired: bool = False
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class Page(BaseModel):
    """A connected page (inbox) that contacts are synced from."""

    id: str
    page_id: str                              # external page ID
    name: Optional[str] = None
    access_token: str
    instagram_account_id: Optional[str] = None
    auto_pipeline_id: Optional[str] = None
    auto_pipeline_mode: UpdateMode = UpdateMode.SKIP_EXISTING
    last_synced_at: Optional[datetime] = None


# =============================================================================
# Pipelines
# =============================================================================


class Stage(BaseModel):
    id: str
    pipeline_id: str
    name: str
    type: StageType = StageType.IN_PROGRESS
    order: int
    lead_score_min: int = DEFAULT_SCORE_MIN
    lead_score_max: int = DEFAULT_SCORE_MAX
    description: Optional[str] = None


class Pipeline(BaseModel):
    id: str
    name: str
    stages: List[Stage] = Field(default_factory=list)

    def ordered_stages(self) -> List[Stage]:
        return sorted(self.stages, key=lambda s: s.order)

    @property
    def has_default_ranges(self) -> bool:
        return any(
            s.lead_score_min == DEFAULT_SCORE_MIN and s.lead_score_max == DEFAULT_SCORE_MAX
            for s in self.stages
        )


# =============================================================================
# Contacts
# =============================================================================


class Contact(BaseModel):
    id: str
    page_id: str
    platform: Platform = Platform.MESSENGER
    participant_id: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    last_interaction: Optional[datetime] = None
    ai_context: Optional[str] = None
    ai_context_updated_at: Optional[datetime] = None
    pipeline_id: Optional[str] = None
    stage_id: Optional[str] = None
    lead_score: Optional[int] = None
    lead_status: Optional[LeadStatus] = None
    stage_entered_at: Optional[datetime] = None

    # Populated by lookups that join the current stage
    stage: Optional[Stage] = None


class ContactUpsert(BaseModel):
    """Create-or-update payload keyed by (page, platform, participant).

    ``ai_context`` of None leaves an existing summary untouched.
    """

    page_id: str
    platform: Platform
    participant_id: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    last_interaction: Optional[datetime] = None
    ai_context: Optional[str] = None
    ai_context_updated_at: Optional[datetime] = None

    @property
    def identity_key(self) -> tuple:
        return (self.page_id, self.platform.value, self.participant_id)


class ContactUpdate(BaseModel):
    """Pipeline placement written to one contact."""

    contact_id: str
    pipeline_id: Optional[str] = None
    stage_id: Optional[str] = None
    stage_entered_at: Optional[datetime] = None
    lead_score: Optional[int] = None
    lead_status: Optional[LeadStatus] = None
    ai_context: Optional[str] = None
    ai_context_updated_at: Optional[datetime] = None

    def payload(self) -> Dict[str, Any]:
        """Fields to write, excluding the target contact and unset values."""
        return self.model_dump(exclude={"contact_id"}, exclude_none=True)


class ActivityRecord(BaseModel):
    contact_id: str
    type: str = "STAGE_CHANGED"
    title: str
    description: Optional[str] = None
    from_stage_id: Optional[str] = None
    to_stage_id: Optional[str] = None
    user_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class BatchResult(BaseModel):
    """Outcome of a grouped write."""

    created: int = 0
    updated: int = 0
    failed: int = 0
    errors: List[Dict[str, Any]] = Field(default_factory=list)


class AssignResult(BaseModel):
    assigned_count: int = 0
    skipped_count: int = 0
    failed_count: int = 0
    errors: List[Dict[str, Any]] = Field(default_factory=list)


# =============================================================================
# Analysis
# =============================================================================


class AIContactAnalysis(BaseModel):
    """The classifier's verdict for one transcript."""

    summary: str = ""
    recommended_stage: str = ""
    lead_score: int = Field(ge=0, le=100)
    lead_status: LeadStatus = LeadStatus.NEW
    confidence: int = Field(default=0, ge=0, le=100)
    reasoning: str = ""


class Assignment(BaseModel):
    contact_id: str
    analysis: AIContactAnalysis
    pipeline_id: str
    update_mode: UpdateMode = UpdateMode.SKIP_EXISTING
    user_id: Optional[str] = None


# =============================================================================
# Credentials
# =============================================================================


class ApiKey(BaseModel):
    id: str
    name: Optional[str] = None
    encrypted_secret: str
    status: ApiKeyStatus = ApiKeyStatus.ACTIVE
    consecutive_failures: int = 0
    failed_requests: int = 0
    total_requests: int = 0
    last_used_at: Optional[datetime] = None
    last_success_at: Optional[datetime] = None
    rate_limited_at: Optional[datetime] = None
    disabled_reason: Optional[str] = None
    created_at: Optional[datetime] = None


class KeyLease(BaseModel):
    """A decrypted credential handed to one classifier call.

    ``key_id`` is None for the environment override key, which has no
    persisted health state.
    """

    key_id: Optional[str] = None
    secret: str


class KeyEvent(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    RATE_LIMITED = "rate_limited"
    INVALID = "invalid"


# =============================================================================
# Conversation source
# =============================================================================


class SourceParticipant(BaseModel):
    id: str
    name: Optional[str] = None
    username: Optional[str] = None


class SourceConversation(BaseModel):
    id: str
    updated_time: datetime
    participants: List[SourceParticipant] = Field(default_factory=list)


class SourceMessage(BaseModel):
    """A message as returned by the conversation source (newest first)."""

    id: Optional[str] = None
    sender_id: Optional[str] = None
    sender_name: Optional[str] = None
    sender_username: Optional[str] = None
    text: Optional[str] = None
    created_time: Optional[datetime] = None


class TranscriptMessage(BaseModel):
    """One transcript turn, oldest first within a transcript."""

    sender: str
    sender_id: Optional[str] = None
    text: str
    timestamp: Optional[datetime] = None


class ParticipantTask(BaseModel):
    participant_id: str
    conversation_id: str
    updated_time: datetime
    platform: Platform = Platform.MESSENGER
