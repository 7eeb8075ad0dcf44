"""
Sync Orchestrator

Runs background sync jobs: streams conversations for a page, fetches and
analyzes transcripts under two bounded pools, and commits contacts, stage
placements and activity rows in grouped writes.

Job lifecycle: PENDING -> IN_PROGRESS -> COMPLETED | FAILED | CANCELLED.
Cancellation is cooperative. The job row is polled before every batch, every
``cancel_poll_every`` streamed conversations, and before each progress
write. Work already dispatched finishes, nothing new starts.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Sequence, Set, Tuple

from .analysis_client import AnalysisClient
from .background import BackgroundSupervisor
from .batch_persistence import BatchPersistence
from .concurrency import ConcurrencyLimiter
from .config import Settings
from .error_recovery import ErrorRecovery
from .errors import ConversationSourceError, JobNotFoundError, PageNotFoundError, ProviderErrorKind
from .fallback_scoring import analyze_with_fallback
from .interfaces import ConversationSource, SyncStore
from .logging_utils import JobLogger
from .message_cache import MessageCache
from .models import (
    AIContactAnalysis,
    Assignment,
    Contact,
    ContactUpsert,
    Page,
    ParticipantTask,
    Pipeline,
    Platform,
    Stage,
    SyncJob,
    SyncMode,
    SyncStatus,
    TranscriptMessage,
    UpdateMode,
)
from .pipeline_cache import PipelineCache
from .progress import ProgressTracker
from .stage_matcher import apply_score_ranges, generate_score_ranges
from .work_queue import QueueTask, WorkQueue

logger = logging.getLogger(__name__)

SourceFactory = Callable[[str], ConversationSource]

RETRYABLE_SOURCE_ERRORS = (ProviderErrorKind.TRANSIENT, ProviderErrorKind.RATE_LIMITED)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def extract_display_name(
    messages: Sequence[TranscriptMessage], participant_id: str
) -> Tuple[Optional[str], Optional[str]]:
    """Split the participant's display name from the first message they sent.

    Returns (first_name, last_name); both None when the participant never
    appears with a usable name.
    """
    for message in messages:
        if message.sender_id != participant_id:
            continue
        name = message.sender.strip()
        if not name or name in (participant_id, "Unknown"):
            continue
        parts = name.split()
        return parts[0], (" ".join(parts[1:]) or None)
    return None, None


def default_first_name(participant_id: str) -> str:
    return f"User {participant_id[-6:]}"


@dataclass
class TaskOutcome:
    """Result of the fetch -> analyze steps for one participant."""

    task: ParticipantTask
    upsert: Optional[ContactUpsert] = None
    analysis: Optional[AIContactAnalysis] = None
    error: Optional[str] = None
    code: Optional[int] = None
    retryable: bool = False
    exc: Optional[BaseException] = None


@dataclass
class JobRun:
    """Mutable state of one running job."""

    job_id: str
    page: Page
    mode: SyncMode
    update_mode: UpdateMode
    pipeline: Optional[Pipeline]
    progress: ProgressTracker
    log: JobLogger
    fetch_limiter: ConcurrencyLimiter
    analysis_limiter: ConcurrencyLimiter
    recovery: ErrorRecovery
    selected: Optional[Set[Tuple[Platform, str]]] = None

    synced: int = 0
    failed: int = 0
    total: int = 0
    skipped: int = 0
    batches: int = 0
    token_expired: bool = False
    fatal: bool = False
    cancelled: bool = False
    deferred: Dict[str, ParticipantTask] = field(default_factory=dict)

    @property
    def stages(self) -> Optional[List[Stage]]:
        return self.pipeline.ordered_stages() if self.pipeline else None

    @property
    def halted(self) -> bool:
        return self.cancelled or self.token_expired


class SyncOrchestrator:
    """Job control surface and job runner for contact sync."""

    def __init__(
        self,
        store: SyncStore,
        source_factory: SourceFactory,
        analysis_client: AnalysisClient,
        message_cache: MessageCache,
        pipeline_cache: PipelineCache,
        persistence: BatchPersistence,
        supervisor: BackgroundSupervisor,
        settings: Optional[Settings] = None,
    ):
        self.store = store
        self.source_factory = source_factory
        self.analysis_client = analysis_client
        self.message_cache = message_cache
        self.pipeline_cache = pipeline_cache
        self.persistence = persistence
        self.supervisor = supervisor
        self.settings = settings or Settings()
        self._start_lock = asyncio.Lock()

    # -------------------------------------------------------------------------
    # Job control
    # -------------------------------------------------------------------------

    async def start_sync(
        self,
        page_id: str,
        mode: SyncMode = SyncMode.FULL,
        contact_ids: Optional[List[str]] = None,
    ) -> str:
        """Create a sync job for a page and run it in the background.

        If the page already has a PENDING or IN_PROGRESS job, that job's ID is
        returned and nothing new is started.

        Raises:
            PageNotFoundError: If the page does not exist
            ValueError: If SELECTED_SUBSET is requested without contact IDs
        """
        job, _ = await self.start_or_join(page_id, mode, contact_ids)
        return job.id

    async def start_or_join(
        self,
        page_id: str,
        mode: SyncMode = SyncMode.FULL,
        contact_ids: Optional[List[str]] = None,
    ) -> Tuple[SyncJob, bool]:
        """Like start_sync, but returns (job, created)."""
        if mode == SyncMode.SELECTED_SUBSET and not contact_ids:
            raise ValueError("SELECTED_SUBSET sync requires contact_ids")

        async with self._start_lock:
            existing = await self.store.find_active_job(page_id)
            if existing is not None:
                logger.info(f"Sync already in progress for page {page_id}: job {existing.id}")
                return existing, False

            if await self.store.get_page(page_id) is None:
                raise PageNotFoundError(f"Page {page_id} not found")

            job = await self.store.create_job(page_id, mode)

        logger.info(f"Created sync job {job.id} for page {page_id} (mode={mode.value})")
        self.supervisor.spawn(self.run_job(job.id, contact_ids), name=f"sync-{job.id}")
        return job, True

    async def get_job_status(self, job_id: str) -> SyncJob:
        job = await self.store.get_job(job_id)
        if job is None:
            raise JobNotFoundError(f"Sync job {job_id} not found")
        return job

    async def get_latest_job(self, page_id: str) -> Optional[SyncJob]:
        return await self.store.get_latest_job(page_id)

    async def cancel(self, job_id: str) -> SyncJob:
        """Request cancellation. A job that already finished is left as is."""
        job = await self.get_job_status(job_id)
        if job.status.is_terminal:
            return job
        await self.store.update_job(job_id, status=SyncStatus.CANCELLED, completed_at=_utcnow())
        logger.info(f"Cancellation requested for sync job {job_id}")
        return await self.get_job_status(job_id)

    async def _is_cancelled(self, job_id: str) -> bool:
        try:
            job = await self.store.get_job(job_id)
        except Exception as e:
            logger.warning(f"[Sync {job_id}] Could not read job status for cancellation check: {e}")
            return False
        return job is not None and job.status == SyncStatus.CANCELLED

    # -------------------------------------------------------------------------
    # Job runner
    # -------------------------------------------------------------------------

    async def run_job(self, job_id: str, contact_ids: Optional[List[str]] = None) -> None:
        """Run a job to completion. Never raises; failures land on the job row.

        An unexpected error is appended to the errors already collected, so
        the unit-level history survives the job failing.
        """
        log = JobLogger(logger, job_id)
        progress = ProgressTracker(self.store, job_id, max_errors=self.settings.max_job_errors)
        try:
            await self._run(job_id, contact_ids, log, progress)
        except Exception as e:
            log.error(f"Sync failed: {e}", exc_info=True)
            progress.add_error(str(e))
            await progress.finalize(SyncStatus.FAILED)

    async def _run(
        self, job_id: str, contact_ids: Optional[List[str]], log: JobLogger, progress: ProgressTracker
    ) -> None:
        job = await self.store.get_job(job_id)
        if job is None:
            raise JobNotFoundError(f"Sync job {job_id} not found")
        if job.status.is_terminal:
            log.info(f"Job is already {job.status.value}, not starting")
            return

        page = await self.store.get_page(job.facebook_page_id)
        if page is None:
            raise PageNotFoundError(f"Page {job.facebook_page_id} not found")

        await self.store.update_job(
            job_id, status=SyncStatus.IN_PROGRESS, started_at=_utcnow(), total_contacts=0
        )

        pipeline = await self._prepare_pipeline(page, job.mode, log)
        update_mode = (
            UpdateMode.UPDATE_EXISTING if job.mode == SyncMode.SELECTED_SUBSET else page.auto_pipeline_mode
        )
        settings = self.settings
        run = JobRun(
            job_id=job_id,
            page=page,
            mode=job.mode,
            update_mode=update_mode,
            pipeline=pipeline,
            progress=progress,
            log=log,
            fetch_limiter=ConcurrencyLimiter(settings.fetch_concurrency),
            analysis_limiter=ConcurrencyLimiter(settings.analysis_concurrency),
            recovery=ErrorRecovery(
                max_retries=settings.retry_attempts,
                initial_delay=settings.retry_initial_delay_ms / 1000.0,
            ),
        )

        if job.mode == SyncMode.SELECTED_SUBSET:
            selected = await self.store.get_contacts(contact_ids or [])
            run.selected = {(c.platform, c.participant_id) for c in selected if c.page_id == page.id}
            log.info(f"Re-syncing {len(run.selected)} selected contact(s)")

        log.info(
            f"Starting {job.mode.value} sync for page {page.page_id}"
            + (f", pipeline {pipeline.name} ({update_mode.value})" if pipeline else ", no auto-pipeline")
        )

        source = self.source_factory(page.access_token)
        try:
            await self._sync_platform(run, source, Platform.MESSENGER, page.page_id)
            if page.instagram_account_id and not run.halted:
                await self._sync_platform(run, source, Platform.INSTAGRAM, page.instagram_account_id)
        finally:
            await source.close()

        if run.cancelled or await self._is_cancelled(job_id):
            log.info(f"Sync cancelled after {run.synced} synced, {run.failed} failed")
            return

        if run.synced > 0 or not run.token_expired:
            try:
                await self.store.mark_page_synced(page.id, _utcnow())
            except Exception as e:
                log.warning(f"Could not update page last-synced time: {e}")

        status = SyncStatus.FAILED if (run.token_expired or run.fatal) else SyncStatus.COMPLETED
        if not await run.progress.finalize(status, token_expired=run.token_expired):
            log.info(f"Job was cancelled before {status.value} could be recorded")
            return
        log.info(
            f"Sync {status.value}: {run.synced} synced, {run.failed} failed, {run.skipped} skipped"
            + (" (token expired)" if run.token_expired else "")
        )

    async def _prepare_pipeline(self, page: Page, mode: SyncMode, log: JobLogger) -> Optional[Pipeline]:
        """Load the page's auto-pipeline, generating score ranges if still at defaults."""
        if not page.auto_pipeline_id or mode == SyncMode.CONTACTS_ONLY:
            return None

        pipeline = await self.pipeline_cache.get(page.auto_pipeline_id)
        if pipeline is None:
            log.warning(f"Auto-pipeline {page.auto_pipeline_id} not found, contacts will not be assigned")
            return None

        if pipeline.stages and pipeline.has_default_ranges:
            log.info(f"Pipeline {pipeline.name} has default score ranges, generating ranges")
            ranges = generate_score_ranges(pipeline.stages)
            await self.store.update_stage_ranges(pipeline.id, ranges)
            self.pipeline_cache.invalidate(pipeline.id)
            reloaded = await self.pipeline_cache.get(pipeline.id)
            pipeline = reloaded or pipeline.model_copy(
                update={"stages": apply_score_ranges(pipeline.stages, ranges)}
            )
        return pipeline

    # -------------------------------------------------------------------------
    # Streaming
    # -------------------------------------------------------------------------

    async def _sync_platform(
        self, run: JobRun, source: ConversationSource, platform: Platform, account_id: str
    ) -> None:
        """Stream one platform's conversations, processing a batch as soon as one fills up.

        Processing of batch N overlaps with streaming for batch N+1.
        """
        batch_size = self.settings.batch_size
        buffer: List[ParticipantTask] = []
        in_flight: Optional[asyncio.Task] = None
        streamed = 0

        run.log.info(f"Fetching {platform.value} conversations")
        try:
            async for conversation in source.stream_conversations(account_id, platform):
                streamed += 1
                if streamed % self.settings.cancel_poll_every == 0 and await self._is_cancelled(run.job_id):
                    run.cancelled = True
                if run.halted:
                    break

                for participant in conversation.participants:
                    if participant.id == account_id:
                        continue
                    if run.selected is not None and (platform, participant.id) not in run.selected:
                        continue
                    buffer.append(ParticipantTask(
                        participant_id=participant.id,
                        conversation_id=conversation.id,
                        updated_time=conversation.updated_time,
                        platform=platform,
                    ))

                while len(buffer) >= batch_size:
                    batch, buffer = buffer[:batch_size], buffer[batch_size:]
                    in_flight = await self._dispatch(run, source, platform, batch, in_flight)

            if buffer and not run.halted:
                in_flight = await self._dispatch(run, source, platform, buffer, in_flight)
        except ConversationSourceError as e:
            run.log.error(f"Failed to fetch {platform.value} conversations: {e}")
            run.progress.add_error(str(e), platform.value, "conversations", e.code)
            if e.is_token_expired:
                run.token_expired = True
            if platform == Platform.MESSENGER:
                run.fatal = True
        finally:
            if in_flight is not None:
                await in_flight

        run.log.info(f"Streamed {streamed} {platform.value} conversation(s)")
        await self._retry_deferred(run, source, platform)

    async def _dispatch(
        self,
        run: JobRun,
        source: ConversationSource,
        platform: Platform,
        batch: List[ParticipantTask],
        in_flight: Optional[asyncio.Task],
    ) -> asyncio.Task:
        if in_flight is not None:
            await in_flight
        return asyncio.ensure_future(self._process_batch(run, source, platform, batch))

    # -------------------------------------------------------------------------
    # Batch processing
    # -------------------------------------------------------------------------

    async def _process_batch(
        self, run: JobRun, source: ConversationSource, platform: Platform, tasks: List[ParticipantTask]
    ) -> None:
        if run.halted:
            return
        if await self._is_cancelled(run.job_id):
            run.log.info("Sync cancelled by user")
            run.cancelled = True
            return

        run.batches += 1
        counted_before = run.synced + run.failed
        try:
            existing = await self.store.find_contacts(
                run.page.id, platform, [t.participant_id for t in tasks]
            )
            tasks = self._select_tasks(run, tasks, existing)
            if not tasks:
                return

            run.total += len(tasks)
            await run.progress.update(total=run.total)
            run.log.info(f"Processing {platform.value} batch {run.batches} ({len(tasks)} contacts)")

            outcomes = await asyncio.gather(
                *(self._process_task(run, source, t, existing.get(t.participant_id)) for t in tasks)
            )

            ready: List[TaskOutcome] = []
            for outcome in outcomes:
                if outcome.retryable and not run.halted:
                    dead = self._defer(run, outcome)
                    if dead is not None:
                        ready.append(dead)
                else:
                    ready.append(outcome)

            await self._commit(run, platform, ready)
        except Exception as e:
            await self._fail_batch(run, platform, tasks, counted_before, e)
            return

        run.log.info(
            f"Batch {run.batches} complete: {run.synced} synced, {run.failed} failed, "
            f"{len(run.deferred)} deferred"
        )

    async def _fail_batch(
        self,
        run: JobRun,
        platform: Platform,
        tasks: List[ParticipantTask],
        counted_before: int,
        error: Exception,
    ) -> None:
        """Count a batch that hit an unexpected error as failed and keep the job going.

        Tasks still deferred for retry are left to the retry pass, and tasks
        already counted before the error are not counted twice.
        """
        run.log.error(f"{platform.value} batch {run.batches} failed: {error}", exc_info=True)
        remaining = list({
            t.participant_id: t for t in tasks if self._task_key(t) not in run.deferred
        }.values())
        shortfall = len(remaining) - (run.synced + run.failed - counted_before)
        if shortfall > 0:
            for task in remaining[-shortfall:]:
                run.failed += 1
                run.progress.add_error(str(error), platform.value, task.participant_id)
        await run.progress.update(synced=run.synced, failed=run.failed)

    def _select_tasks(
        self, run: JobRun, tasks: List[ParticipantTask], existing: Dict[str, Contact]
    ) -> List[ParticipantTask]:
        # One task per participant; the most recently updated conversation wins
        latest: Dict[str, ParticipantTask] = {}
        for task in tasks:
            current = latest.get(task.participant_id)
            if current is None or task.updated_time > current.updated_time:
                latest[task.participant_id] = task
        selected = list(latest.values())

        if run.mode == SyncMode.ANALYSIS_ONLY:
            selected = [t for t in selected if t.participant_id in existing]

        if run.update_mode == UpdateMode.SKIP_EXISTING and run.pipeline is not None:
            kept = [
                t for t in selected
                if not (t.participant_id in existing and existing[t.participant_id].pipeline_id)
            ]
            if len(kept) < len(selected):
                run.skipped += len(selected) - len(kept)
                run.log.debug(f"Skipping {len(selected) - len(kept)} contact(s) already on a pipeline")
            selected = kept

        return selected

    async def _process_task(
        self,
        run: JobRun,
        source: ConversationSource,
        task: ParticipantTask,
        contact: Optional[Contact],
    ) -> TaskOutcome:
        """Fetch (cache-aware) and analyze one participant. Never raises."""
        timeout = self.settings.fetch_timeout_seconds
        try:
            fetched = await run.fetch_limiter.execute(
                lambda: asyncio.wait_for(
                    self.message_cache.fetch_differential(
                        source,
                        task.conversation_id,
                        contact,
                        max_pages=self.settings.message_pages,
                        updated_time=task.updated_time,
                    ),
                    timeout,
                )
            )
        except ConversationSourceError as e:
            if e.is_token_expired:
                run.token_expired = True
            run.log.warning(f"Failed to fetch messages for conversation {task.conversation_id}: {e}")
            return TaskOutcome(
                task=task, error=str(e), code=e.code,
                retryable=e.kind in RETRYABLE_SOURCE_ERRORS, exc=e,
            )
        except asyncio.TimeoutError as e:
            message = f"Timeout: fetching messages for conversation {task.conversation_id} took longer than {timeout}s"
            run.log.warning(message)
            return TaskOutcome(task=task, error=message, retryable=True, exc=e)
        except Exception as e:
            run.log.warning(f"Unexpected error fetching conversation {task.conversation_id}: {e}")
            return TaskOutcome(task=task, error=str(e), exc=e)

        first_name, last_name = extract_display_name(fetched.messages, task.participant_id)
        if first_name is None:
            if contact is not None and contact.first_name:
                first_name, last_name = contact.first_name, contact.last_name
            else:
                first_name = default_first_name(task.participant_id)

        analysis = None
        if run.mode != SyncMode.CONTACTS_ONLY and fetched.new_messages:
            try:
                analysis, used_fallback = await run.analysis_limiter.execute(
                    lambda: analyze_with_fallback(
                        self.analysis_client, fetched.new_messages, run.stages, task.updated_time
                    )
                )
            except Exception as e:
                run.log.warning(f"Analysis failed for {task.participant_id}: {e}")
                return TaskOutcome(task=task, error=str(e), exc=e)
            if used_fallback:
                run.log.warning(
                    f"Used fallback scoring for {task.participant_id} - score {analysis.lead_score}"
                )

        upsert = ContactUpsert(
            page_id=run.page.id,
            platform=task.platform,
            participant_id=task.participant_id,
            first_name=first_name,
            last_name=last_name,
            last_interaction=task.updated_time,
            ai_context=analysis.summary if analysis else None,
            ai_context_updated_at=_utcnow() if analysis else None,
        )
        return TaskOutcome(task=task, upsert=upsert, analysis=analysis)

    async def _commit(self, run: JobRun, platform: Platform, outcomes: List[TaskOutcome]) -> None:
        """Persist a set of outcomes and publish progress."""
        for outcome in outcomes:
            if outcome.error is not None:
                run.failed += 1
                run.progress.add_error(outcome.error, platform.value, outcome.task.participant_id, outcome.code)

        good = [o for o in outcomes if o.upsert is not None]
        if good:
            upserted = await self.persistence.batch_upsert_contacts([o.upsert for o in good])
            for err in upserted.result.errors:
                run.failed += 1
                run.progress.add_error(err["error"], platform.value, err["participant_id"])

            assignments = []
            if run.pipeline is not None:
                for outcome in good:
                    contact = upserted.contacts.get(outcome.upsert.identity_key)
                    if contact is not None and outcome.analysis is not None:
                        assignments.append(Assignment(
                            contact_id=contact.id,
                            analysis=outcome.analysis,
                            pipeline_id=run.pipeline.id,
                            update_mode=run.update_mode,
                        ))

            assign_failed: Set[str] = set()
            if assignments:
                assigned = await self.persistence.batch_auto_assign(assignments)
                for err in assigned.errors:
                    assign_failed.add(err["contact_id"])
                    run.progress.add_error(err["error"], platform.value, err["contact_id"])

            for contact in upserted.contacts.values():
                if contact.id in assign_failed:
                    run.failed += 1
                else:
                    run.synced += 1

        if await self._is_cancelled(run.job_id):
            run.cancelled = True
            return
        await run.progress.update(synced=run.synced, failed=run.failed)

    # -------------------------------------------------------------------------
    # Deferred retries
    # -------------------------------------------------------------------------

    @staticmethod
    def _task_key(task: ParticipantTask) -> str:
        return f"{task.platform.value}:{task.participant_id}:{task.conversation_id}"

    def _defer(self, run: JobRun, outcome: TaskOutcome) -> Optional[TaskOutcome]:
        """Record a retryable failure. Returns the outcome if it is now dead-lettered."""
        key = self._task_key(outcome.task)
        run.recovery.record_failure(key, outcome.task, outcome.exc or RuntimeError(outcome.error))
        run.recovery.should_retry(key)
        if run.recovery.is_pending(key):
            run.deferred[key] = outcome.task
            return None
        run.deferred.pop(key, None)
        return outcome

    async def _retry_deferred(self, run: JobRun, source: ConversationSource, platform: Platform) -> None:
        """Re-run deferred conversations for a platform until they succeed or are dead-lettered."""
        while run.recovery.pending_tasks():
            if run.halted:
                break
            wait = run.recovery.next_retry_in()
            if wait:
                await asyncio.sleep(wait)
            if await self._is_cancelled(run.job_id):
                run.cancelled = True
                break

            ready = run.recovery.get_retryable_tasks()
            run.log.info(f"Retrying {len(ready)} deferred conversation(s)")

            async def process(queued: QueueTask[ParticipantTask]) -> TaskOutcome:
                task = queued.data
                existing = await self.store.find_contacts(run.page.id, task.platform, [task.participant_id])
                return await self._process_task(run, source, task, existing.get(task.participant_id))

            queue: WorkQueue[ParticipantTask, TaskOutcome] = WorkQueue(
                process, max_concurrent=self.settings.fetch_concurrency, retry_delay=0
            )
            queue.enqueue_batch([
                QueueTask(
                    id=failed.id,
                    priority=int(failed.task.updated_time.timestamp()),
                    data=failed.task,
                    max_retries=0,
                )
                for failed in ready
            ])
            results = await queue.wait_for_completion()

            settled: List[TaskOutcome] = []
            for failed in ready:
                result = results.get(failed.id)
                if result is None or not result.success:
                    outcome = TaskOutcome(
                        task=failed.task,
                        error=result.error if result else "Retry did not run",
                        retryable=True,
                    )
                else:
                    outcome = result.result

                if outcome.retryable and not run.halted:
                    dead = self._defer(run, outcome)
                    if dead is not None:
                        settled.append(dead)
                else:
                    run.recovery.mark_recovered(failed.id)
                    run.deferred.pop(failed.id, None)
                    settled.append(outcome)

            counted_before = run.synced + run.failed
            try:
                await self._commit(run, platform, settled)
            except Exception as e:
                await self._fail_batch(run, platform, [o.task for o in settled], counted_before, e)

        if run.token_expired:
            # Everything still deferred would fail the same way
            leftovers = [
                TaskOutcome(task=f.task, error=str(f.error))
                for f in run.recovery.pending_tasks()
                if f.task.platform == platform
            ]
            for f in run.recovery.pending_tasks():
                run.recovery.mark_recovered(f.id)
            run.deferred.clear()
            if leftovers and not run.cancelled:
                await self._commit(run, platform, leftovers)

        dead_letters = run.recovery.get_dead_letter_queue()
        if dead_letters:
            run.log.warning(f"{len(dead_letters)} conversation(s) dead-lettered after retries")
