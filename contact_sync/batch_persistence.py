"""
Grouped contact and activity writers.

Each operation takes a list of records and collapses it into as few store
calls as possible: identical update payloads share one ``update_contacts``
call, pipeline assignment loads the pipeline and all contacts once, and
activity rows go out in a single insert.
"""

import hashlib
import json
import logging
from collections import OrderedDict, defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Sequence, Tuple

from .interfaces import SyncStore
from .models import (
    ActivityRecord,
    AssignResult,
    Assignment,
    BatchResult,
    Contact,
    ContactUpdate,
    ContactUpsert,
    UpdateMode,
)
from .pipeline_cache import PipelineCache
from .stage_matcher import DowngradePolicy, resolve_stage, should_prevent_downgrade

logger = logging.getLogger(__name__)

AUTO_ASSIGN_TITLE = "AI auto-assigned to pipeline"


@dataclass
class UpsertResult:
    """Upsert outcome plus the stored contacts, keyed by identity key."""

    result: BatchResult
    contacts: Dict[tuple, Contact] = field(default_factory=dict)


def _payload_key(payload: dict) -> str:
    encoded = json.dumps(payload, sort_keys=True, default=str)
    return hashlib.sha1(encoded.encode("utf-8")).hexdigest()


class BatchPersistence:
    """Batched writers over a SyncStore."""

    def __init__(
        self,
        store: SyncStore,
        pipeline_cache: PipelineCache,
        downgrade_policy: DowngradePolicy = DowngradePolicy(),
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.store = store
        self.pipeline_cache = pipeline_cache
        self.downgrade_policy = downgrade_policy
        self._now = now

    async def batch_upsert_contacts(self, records: Sequence[ContactUpsert]) -> UpsertResult:
        """Create or update contacts, one store call per unique identity.

        Duplicate identities within the batch collapse to the last record.
        """
        outcome = UpsertResult(result=BatchResult())
        unique: "OrderedDict[tuple, ContactUpsert]" = OrderedDict()
        for record in records:
            unique[record.identity_key] = record

        for key, record in unique.items():
            try:
                contact = await self.store.upsert_contact(record)
            except Exception as e:
                logger.warning(f"Failed to upsert contact {record.participant_id}: {e}")
                outcome.result.failed += 1
                outcome.result.errors.append({"participant_id": record.participant_id, "error": str(e)})
                continue
            outcome.contacts[key] = contact
            outcome.result.updated += 1

        return outcome

    async def batch_update_contacts(self, updates: Sequence[ContactUpdate]) -> BatchResult:
        """Apply updates, grouping contacts whose payloads are identical.

        If a grouped write fails, every contact in that group counts as failed.
        """
        result = BatchResult()
        if not updates:
            return result

        groups: "OrderedDict[str, Tuple[dict, List[str]]]" = OrderedDict()
        for update in updates:
            payload = update.payload()
            key = _payload_key(payload)
            if key not in groups:
                groups[key] = (payload, [])
            groups[key][1].append(update.contact_id)

        for payload, contact_ids in groups.values():
            try:
                await self.store.update_contacts(contact_ids, payload)
            except Exception as e:
                logger.error(f"Grouped update of {len(contact_ids)} contact(s) failed: {e}")
                result.failed += len(contact_ids)
                result.errors.extend({"contact_id": cid, "error": str(e)} for cid in contact_ids)
                continue
            result.updated += len(contact_ids)

        logger.debug(
            f"Batch update: {result.updated} updated, {result.failed} failed in {len(groups)} write(s)"
        )
        return result

    async def batch_create_activities(self, records: Sequence[ActivityRecord]) -> BatchResult:
        """Insert activity rows in one call, falling back to per-row inserts."""
        result = BatchResult()
        if not records:
            return result

        try:
            result.created = await self.store.create_activities(records, skip_duplicates=True)
            return result
        except Exception as e:
            logger.warning(f"Batch activity insert failed, retrying {len(records)} row(s) individually: {e}")

        for record in records:
            try:
                await self.store.create_activity(record)
                result.created += 1
            except Exception as e:
                result.failed += 1
                result.errors.append({"contact_id": record.contact_id, "error": str(e)})
        return result

    async def batch_auto_assign(self, assignments: Sequence[Assignment]) -> AssignResult:
        """Place contacts on pipeline stages from their analyses.

        Per pipeline: load the pipeline (cached) and all target contacts once,
        resolve each contact's stage, honor ``update_mode`` and downgrade
        protection, then write placements and activity rows as two batches.
        Activity failures are logged but do not fail the assignment.
        """
        result = AssignResult()
        if not assignments:
            return result

        by_pipeline: Dict[str, List[Assignment]] = defaultdict(list)
        for assignment in assignments:
            by_pipeline[assignment.pipeline_id].append(assignment)

        for pipeline_id, group in by_pipeline.items():
            try:
                await self._assign_pipeline_group(pipeline_id, group, result)
            except Exception as e:
                logger.error(f"Assignment to pipeline {pipeline_id} failed: {e}")
                result.failed_count += len(group)
                result.errors.extend(
                    {"contact_id": a.contact_id, "error": f"Pipeline processing failed: {e}"} for a in group
                )

        logger.info(
            f"Auto-assign complete: {result.assigned_count} assigned, "
            f"{result.skipped_count} skipped, {result.failed_count} failed"
        )
        return result

    # Both names are used by callers; placement is always batched.
    batch_assign = batch_auto_assign

    async def _assign_pipeline_group(
        self, pipeline_id: str, group: List[Assignment], result: AssignResult
    ) -> None:
        pipeline = await self.pipeline_cache.get(pipeline_id)
        if pipeline is None:
            result.failed_count += len(group)
            result.errors.extend(
                {"contact_id": a.contact_id, "error": f"Pipeline {pipeline_id} not found"} for a in group
            )
            return

        contacts = {c.id: c for c in await self.store.get_contacts([a.contact_id for a in group])}
        entered_at = self._now()
        updates: List[ContactUpdate] = []
        activities: List[ActivityRecord] = []

        for assignment in group:
            contact = contacts.get(assignment.contact_id)
            if contact is None:
                result.failed_count += 1
                result.errors.append({"contact_id": assignment.contact_id, "error": "Contact not found"})
                continue

            if assignment.update_mode == UpdateMode.SKIP_EXISTING and contact.pipeline_id:
                result.skipped_count += 1
                continue

            analysis = assignment.analysis
            proposed = resolve_stage(pipeline.stages, analysis)
            if proposed is None:
                result.failed_count += 1
                result.errors.append(
                    {"contact_id": assignment.contact_id, "error": "No stages available in pipeline"}
                )
                continue

            if contact.stage is not None and should_prevent_downgrade(
                contact.stage.order,
                proposed.order,
                analysis.lead_score,
                proposed.lead_score_min,
                self.downgrade_policy,
            ):
                logger.info(
                    f"Keeping contact {contact.id} in {contact.stage.name}: "
                    f"score {analysis.lead_score} does not justify moving back to {proposed.name}"
                )
                result.skipped_count += 1
                continue

            updates.append(ContactUpdate(
                contact_id=contact.id,
                pipeline_id=pipeline_id,
                stage_id=proposed.id,
                stage_entered_at=entered_at,
                lead_score=analysis.lead_score,
                lead_status=analysis.lead_status,
            ))
            activities.append(ActivityRecord(
                contact_id=contact.id,
                type="STAGE_CHANGED",
                title=AUTO_ASSIGN_TITLE,
                description=analysis.reasoning or None,
                from_stage_id=contact.stage_id,
                to_stage_id=proposed.id,
                user_id=assignment.user_id,
                metadata={
                    "confidence": analysis.confidence,
                    "aiRecommendation": analysis.recommended_stage,
                    "leadScore": analysis.lead_score,
                    "leadStatus": analysis.lead_status.value,
                },
            ))

        if updates:
            update_result = await self.batch_update_contacts(updates)
            result.assigned_count += update_result.updated
            result.failed_count += update_result.failed
            result.errors.extend(update_result.errors)

        if activities:
            activity_result = await self.batch_create_activities(activities)
            if activity_result.failed:
                logger.warning(f"Failed to record {activity_result.failed} stage-change activities")
