"""In-process SyncStore.

Holds everything in dicts. Used by the test suite and for local runs
without PostgreSQL. Returned models are copies, so callers never mutate
stored state by accident.
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence, Tuple

from ..models import (
    NON_TERMINAL_STATUSES,
    ActivityRecord,
    ApiKey,
    ApiKeyStatus,
    Contact,
    ContactUpsert,
    JobError,
    KeyEvent,
    Page,
    Pipeline,
    Platform,
    Stage,
    SyncJob,
    SyncMode,
    SyncStatus,
)

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemorySyncStore:
    """Dict-backed implementation of the SyncStore protocol."""

    def __init__(self):
        self.jobs: Dict[str, SyncJob] = {}
        self.pages: Dict[str, Page] = {}
        self.pipelines: Dict[str, Pipeline] = {}
        self.contacts: Dict[str, Contact] = {}
        self.activities: List[ActivityRecord] = []
        self.keys: Dict[str, ApiKey] = {}
        self._job_seq: Dict[str, int] = {}
        self._next_seq = 1

    # -------------------------------------------------------------------------
    # Seeding
    # -------------------------------------------------------------------------

    def add_page(self, page: Page) -> Page:
        self.pages[page.id] = page
        return page

    def add_pipeline(self, pipeline: Pipeline) -> Pipeline:
        self.pipelines[pipeline.id] = pipeline
        return pipeline

    def add_contact(self, contact: Contact) -> Contact:
        self.contacts[contact.id] = contact.model_copy(update={"stage": None})
        return contact

    def add_key(self, key: ApiKey) -> ApiKey:
        if key.created_at is None:
            key = key.model_copy(update={"created_at": _utcnow()})
        self.keys[key.id] = key
        return key

    # -------------------------------------------------------------------------
    # Jobs
    # -------------------------------------------------------------------------

    async def create_job(self, page_id: str, mode: SyncMode) -> SyncJob:
        job = SyncJob(
            id=str(uuid.uuid4()),
            facebook_page_id=page_id,
            status=SyncStatus.PENDING,
            mode=mode,
            created_at=_utcnow(),
        )
        self.jobs[job.id] = job
        self._job_seq[job.id] = self._next_seq
        self._next_seq += 1
        return job.model_copy()

    async def get_job(self, job_id: str) -> Optional[SyncJob]:
        job = self.jobs.get(job_id)
        return job.model_copy() if job else None

    async def find_active_job(self, page_id: str) -> Optional[SyncJob]:
        for job in self._jobs_for_page(page_id):
            if job.status in NON_TERMINAL_STATUSES:
                return job.model_copy()
        return None

    async def get_latest_job(self, page_id: str) -> Optional[SyncJob]:
        jobs = self._jobs_for_page(page_id)
        return jobs[0].model_copy() if jobs else None

    def _jobs_for_page(self, page_id: str) -> List[SyncJob]:
        jobs = [j for j in self.jobs.values() if j.facebook_page_id == page_id]
        return sorted(jobs, key=lambda j: self._job_seq[j.id], reverse=True)

    async def update_job(self, job_id: str, **fields) -> None:
        job = self.jobs.get(job_id)
        if job is None:
            raise KeyError(f"Sync job {job_id} not found")
        if "errors" in fields:
            fields["errors"] = [
                e if isinstance(e, JobError) else JobError(**e) for e in fields["errors"]
            ]
        self.jobs[job_id] = job.model_copy(update=fields)

    async def finish_job(self, job_id: str, **fields) -> bool:
        job = self.jobs.get(job_id)
        if job is None or job.status not in NON_TERMINAL_STATUSES:
            return False
        await self.update_job(job_id, **fields)
        return True

    async def fail_stale_jobs(self, message: str) -> List[str]:
        stale = [j.id for j in self.jobs.values() if j.status in NON_TERMINAL_STATUSES]
        for job_id in stale:
            await self.update_job(
                job_id,
                status=SyncStatus.FAILED,
                completed_at=_utcnow(),
                errors=[JobError(error=message)],
            )
        return stale

    # -------------------------------------------------------------------------
    # Pages and pipelines
    # -------------------------------------------------------------------------

    async def get_page(self, page_id: str) -> Optional[Page]:
        page = self.pages.get(page_id)
        return page.model_copy() if page else None

    async def mark_page_synced(self, page_id: str, synced_at: datetime) -> None:
        page = self.pages.get(page_id)
        if page is not None:
            self.pages[page_id] = page.model_copy(update={"last_synced_at": synced_at})

    async def get_pipeline(self, pipeline_id: str) -> Optional[Pipeline]:
        pipeline = self.pipelines.get(pipeline_id)
        return pipeline.model_copy(deep=True) if pipeline else None

    async def update_stage_ranges(self, pipeline_id: str, ranges: Dict[str, Tuple[int, int]]) -> None:
        pipeline = self.pipelines.get(pipeline_id)
        if pipeline is None:
            raise KeyError(f"Pipeline {pipeline_id} not found")
        stages = [
            s.model_copy(update={"lead_score_min": ranges[s.id][0], "lead_score_max": ranges[s.id][1]})
            if s.id in ranges else s
            for s in pipeline.stages
        ]
        self.pipelines[pipeline_id] = pipeline.model_copy(update={"stages": stages})

    def _find_stage(self, stage_id: Optional[str]) -> Optional[Stage]:
        if not stage_id:
            return None
        for pipeline in self.pipelines.values():
            for stage in pipeline.stages:
                if stage.id == stage_id:
                    return stage
        return None

    # -------------------------------------------------------------------------
    # Contacts
    # -------------------------------------------------------------------------

    def _with_stage(self, contact: Contact) -> Contact:
        return contact.model_copy(update={"stage": self._find_stage(contact.stage_id)})

    async def find_contacts(
        self, page_id: str, platform: Platform, participant_ids: Sequence[str]
    ) -> Dict[str, Contact]:
        wanted = set(participant_ids)
        return {
            c.participant_id: self._with_stage(c)
            for c in self.contacts.values()
            if c.page_id == page_id and c.platform == platform and c.participant_id in wanted
        }

    async def get_contacts(self, contact_ids: Sequence[str]) -> List[Contact]:
        return [self._with_stage(self.contacts[cid]) for cid in contact_ids if cid in self.contacts]

    async def upsert_contact(self, record: ContactUpsert) -> Contact:
        existing = next(
            (
                c for c in self.contacts.values()
                if (c.page_id, c.platform.value, c.participant_id) == record.identity_key
            ),
            None,
        )
        if existing is None:
            contact = Contact(id=str(uuid.uuid4()), **record.model_dump())
        else:
            changes = record.model_dump(exclude={"page_id", "platform", "participant_id"}, exclude_none=True)
            contact = existing.model_copy(update=changes)
        self.contacts[contact.id] = contact
        return self._with_stage(contact)

    async def update_contacts(self, contact_ids: Sequence[str], data: dict) -> int:
        updated = 0
        for cid in contact_ids:
            contact = self.contacts.get(cid)
            if contact is None:
                continue
            self.contacts[cid] = contact.model_copy(update=data)
            updated += 1
        return updated

    async def create_activities(self, records: Sequence[ActivityRecord], skip_duplicates: bool = True) -> int:
        self.activities.extend(records)
        return len(records)

    async def create_activity(self, record: ActivityRecord) -> None:
        self.activities.append(record)

    # -------------------------------------------------------------------------
    # Credentials
    # -------------------------------------------------------------------------

    async def list_active_key_ids(self) -> List[str]:
        active = [k for k in self.keys.values() if k.status == ApiKeyStatus.ACTIVE]
        active.sort(key=lambda k: k.created_at or datetime.min.replace(tzinfo=timezone.utc))
        return [k.id for k in active]

    async def list_keys(self) -> List[ApiKey]:
        return [k.model_copy() for k in self.keys.values()]

    async def get_key(self, key_id: str) -> Optional[ApiKey]:
        key = self.keys.get(key_id)
        return key.model_copy() if key else None

    async def apply_key_event(
        self, key_id: str, event: KeyEvent, reason: Optional[str] = None
    ) -> Optional[ApiKey]:
        key = self.keys.get(key_id)
        if key is None:
            return None

        now = _utcnow()
        changes = {"total_requests": key.total_requests + 1, "last_used_at": now}
        if event == KeyEvent.SUCCESS:
            changes.update(consecutive_failures=0, last_success_at=now)
        elif event == KeyEvent.FAILURE:
            changes.update(
                consecutive_failures=key.consecutive_failures + 1,
                failed_requests=key.failed_requests + 1,
            )
        elif event == KeyEvent.RATE_LIMITED:
            changes.update(
                status=ApiKeyStatus.RATE_LIMITED,
                rate_limited_at=now,
                consecutive_failures=key.consecutive_failures + 1,
                failed_requests=key.failed_requests + 1,
            )
        elif event == KeyEvent.INVALID:
            changes.update(
                status=ApiKeyStatus.DISABLED,
                disabled_reason=reason,
                failed_requests=key.failed_requests + 1,
            )

        self.keys[key_id] = key.model_copy(update=changes)
        return self.keys[key_id].model_copy()
