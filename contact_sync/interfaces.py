"""Collaborator protocols.

The engine depends on these, not on any specific messaging API, model
provider or database. GraphClient, OpenAIClassifier and the two stores
(InMemorySyncStore, PostgresSyncStore) are the shipped implementations.
"""

from datetime import datetime
from typing import AsyncIterator, Dict, List, Optional, Protocol, Sequence

from .models import (
    ActivityRecord,
    ApiKey,
    Contact,
    ContactUpsert,
    KeyEvent,
    Page,
    Pipeline,
    Platform,
    SourceConversation,
    SourceMessage,
    SyncJob,
    SyncMode,
)


class ConversationSource(Protocol):
    """Messaging API that conversations and transcripts are read from.

    Implementations raise ConversationSourceError with kind
    CREDENTIAL_EXPIRED when the page token is no longer valid, and
    RATE_LIMITED or TRANSIENT for availability problems.
    """

    async def list_conversations(
        self, account_id: str, platform: Platform = Platform.MESSENGER
    ) -> List[SourceConversation]:
        """Return every conversation for an account."""
        ...

    def stream_conversations(
        self, account_id: str, platform: Platform = Platform.MESSENGER
    ) -> AsyncIterator[SourceConversation]:
        """Yield conversations page by page as they are fetched."""
        ...

    async def get_messages(
        self, conversation_id: str, max_pages: Optional[int] = None
    ) -> List[SourceMessage]:
        """Return messages for a conversation, newest first."""
        ...

    async def close(self) -> None:
        ...


class Classifier(Protocol):
    """Chat-style text completion.

    Implementations raise ClassifierError with kind RATE_LIMITED,
    AUTH_FAILED, TRANSIENT or MALFORMED.
    """

    async def complete(self, prompt: str, api_key: str) -> str:
        ...


class SyncStore(Protocol):
    """Persistence used by the engine."""

    # Jobs
    async def create_job(self, page_id: str, mode: SyncMode) -> SyncJob: ...

    async def get_job(self, job_id: str) -> Optional[SyncJob]: ...

    async def find_active_job(self, page_id: str) -> Optional[SyncJob]: ...

    async def get_latest_job(self, page_id: str) -> Optional[SyncJob]: ...

    async def update_job(self, job_id: str, **fields) -> None: ...

    async def finish_job(self, job_id: str, **fields) -> bool:
        """Like update_job, but only while the job is PENDING or IN_PROGRESS.

        Returns False (and writes nothing) when the job is missing or already
        terminal, e.g. cancelled while its last batch was committing.
        """
        ...

    async def fail_stale_jobs(self, message: str) -> List[str]: ...

    # Pages
    async def get_page(self, page_id: str) -> Optional[Page]: ...

    async def mark_page_synced(self, page_id: str, synced_at: datetime) -> None: ...

    # Pipelines
    async def get_pipeline(self, pipeline_id: str) -> Optional[Pipeline]: ...

    async def update_stage_ranges(self, pipeline_id: str, ranges: Dict[str, tuple]) -> None: ...

    # Contacts
    async def find_contacts(
        self, page_id: str, platform: Platform, participant_ids: Sequence[str]
    ) -> Dict[str, Contact]:
        """Existing contacts keyed by participant ID."""
        ...

    async def get_contacts(self, contact_ids: Sequence[str]) -> List[Contact]:
        """Contacts by ID, each with its current stage joined in."""
        ...

    async def upsert_contact(self, record: ContactUpsert) -> Contact: ...

    async def update_contacts(self, contact_ids: Sequence[str], data: dict) -> int: ...

    async def create_activities(
        self, records: Sequence[ActivityRecord], skip_duplicates: bool = True
    ) -> int: ...

    async def create_activity(self, record: ActivityRecord) -> None: ...

    # Credentials
    async def list_active_key_ids(self) -> List[str]:
        """IDs of ACTIVE keys, oldest first."""
        ...

    async def list_keys(self) -> List[ApiKey]: ...

    async def get_key(self, key_id: str) -> Optional[ApiKey]: ...

    async def apply_key_event(
        self, key_id: str, event: KeyEvent, reason: Optional[str] = None
    ) -> Optional[ApiKey]:
        """Atomically apply a health event and return the updated key."""
        ...
