"""
Batch Persistence Tests

Tests for grouped contact updates, activity inserts and pipeline
auto-assignment with downgrade protection.
Run with: pytest tests/test_batch_persistence.py -v
"""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, Mock, patch

import pytest

from contact_sync.batch_persistence import AUTO_ASSIGN_TITLE, BatchPersistence
from contact_sync.models import (
    ActivityRecord,
    AIContactAnalysis,
    Assignment,
    Contact,
    ContactUpdate,
    ContactUpsert,
    LeadStatus,
    Platform,
    UpdateMode,
)
from contact_sync.pipeline_cache import PipelineCache
from contact_sync.stage_matcher import DowngradePolicy

from conftest import make_pipeline

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def analysis(score, status=LeadStatus.QUALIFIED, stage=""):
    return AIContactAnalysis(
        summary="summary",
        recommended_stage=stage,
        lead_score=score,
        lead_status=status,
        confidence=75,
        reasoning="because",
    )


def assignment(contact_id, score, mode=UpdateMode.UPDATE_EXISTING, pipeline_id="pipe-1", **kwargs):
    return Assignment(
        contact_id=contact_id,
        analysis=analysis(score, **kwargs),
        pipeline_id=pipeline_id,
        update_mode=mode,
    )


@pytest.fixture
def store(memory_store):
    memory_store.add_pipeline(make_pipeline())
    return memory_store


@pytest.fixture
def persistence(store):
    return BatchPersistence(store, PipelineCache(store), now=lambda: NOW)


def add_contact(store, contact_id, stage_order=None):
    store.add_contact(Contact(
        id=contact_id,
        page_id="page-1",
        participant_id=f"p-{contact_id}",
        pipeline_id="pipe-1" if stage_order else None,
        stage_id=f"stage-{stage_order}" if stage_order else None,
    ))


class TestBatchUpdateContacts:
    """Tests for payload grouping."""

    @pytest.mark.asyncio
    async def test_identical_payloads_share_one_write(self):
        store = Mock(update_contacts=AsyncMock(return_value=0))
        persistence = BatchPersistence(store, Mock())
        updates = [
            ContactUpdate(contact_id=f"c{i}", stage_id="stage-1" if i < 60 else "stage-2", lead_score=10)
            for i in range(100)
        ]

        result = await persistence.batch_update_contacts(updates)

        assert store.update_contacts.await_count == 2
        assert result.updated == 100
        assert result.failed == 0
        first_ids, first_payload = store.update_contacts.await_args_list[0].args
        assert len(first_ids) == 60
        assert first_payload == {"stage_id": "stage-1", "lead_score": 10}

    @pytest.mark.asyncio
    async def test_failed_group_counts_every_member(self):
        store = Mock(update_contacts=AsyncMock(side_effect=[RuntimeError("deadlock"), 2]))
        persistence = BatchPersistence(store, Mock())
        updates = [
            ContactUpdate(contact_id="a", stage_id="stage-1"),
            ContactUpdate(contact_id="b", stage_id="stage-1"),
            ContactUpdate(contact_id="c", stage_id="stage-2"),
            ContactUpdate(contact_id="d", stage_id="stage-2"),
        ]

        result = await persistence.batch_update_contacts(updates)

        assert result.failed == 2
        assert result.updated == 2
        assert {e["contact_id"] for e in result.errors} == {"a", "b"}

    @pytest.mark.asyncio
    async def test_empty_input_makes_no_calls(self):
        store = Mock(update_contacts=AsyncMock())
        result = await BatchPersistence(store, Mock()).batch_update_contacts([])

        assert result.updated == 0
        store.update_contacts.assert_not_called()


class TestBatchUpsertContacts:
    """Tests for contact upserts."""

    @pytest.mark.asyncio
    async def test_duplicate_identities_collapse_to_last(self, store, persistence):
        records = [
            ContactUpsert(page_id="page-1", platform=Platform.MESSENGER, participant_id="p1", first_name="Old"),
            ContactUpsert(page_id="page-1", platform=Platform.MESSENGER, participant_id="p1", first_name="New"),
            ContactUpsert(page_id="page-1", platform=Platform.INSTAGRAM, participant_id="p1", first_name="Insta"),
        ]

        outcome = await persistence.batch_upsert_contacts(records)

        assert outcome.result.updated == 2
        assert len(store.contacts) == 2
        assert outcome.contacts[("page-1", "Messenger", "p1")].first_name == "New"

    @pytest.mark.asyncio
    async def test_single_failure_does_not_abort_batch(self, store, persistence):
        real_upsert = store.upsert_contact

        async def flaky(record):
            if record.participant_id == "bad":
                raise RuntimeError("constraint violation")
            return await real_upsert(record)

        records = [
            ContactUpsert(page_id="page-1", platform=Platform.MESSENGER, participant_id=pid)
            for pid in ("ok1", "bad", "ok2")
        ]
        with patch.object(store, "upsert_contact", side_effect=flaky):
            outcome = await persistence.batch_upsert_contacts(records)

        assert outcome.result.updated == 2
        assert outcome.result.failed == 1
        assert outcome.result.errors[0]["participant_id"] == "bad"


class TestBatchCreateActivities:
    """Tests for the activity insert fallback."""

    @pytest.mark.asyncio
    async def test_falls_back_to_individual_inserts(self):
        store = Mock(
            create_activities=AsyncMock(side_effect=RuntimeError("batch rejected")),
            create_activity=AsyncMock(side_effect=[None, RuntimeError("fk violation"), None]),
        )
        records = [ActivityRecord(contact_id=f"c{i}", title="t") for i in range(3)]

        result = await BatchPersistence(store, Mock()).batch_create_activities(records)

        assert result.created == 2
        assert result.failed == 1
        assert result.errors[0]["contact_id"] == "c1"


class TestBatchAutoAssign:
    """Tests for pipeline placement."""

    @pytest.mark.asyncio
    async def test_new_contacts_placed_by_score(self, store, persistence):
        add_contact(store, "c1")
        add_contact(store, "c2")

        result = await persistence.batch_auto_assign([
            assignment("c1", 20, status=LeadStatus.NEW),
            assignment("c2", 70, status=LeadStatus.NEGOTIATING),
        ])

        assert result.assigned_count == 2
        assert store.contacts["c1"].stage_id == "stage-1"
        assert store.contacts["c2"].stage_id == "stage-4"
        assert store.contacts["c2"].pipeline_id == "pipe-1"
        assert store.contacts["c2"].lead_score == 70
        assert store.contacts["c2"].stage_entered_at == NOW

    @pytest.mark.asyncio
    async def test_activity_records_stage_change(self, store, persistence):
        add_contact(store, "c1", stage_order=2)

        await persistence.batch_auto_assign([assignment("c1", 90, status=LeadStatus.WON, stage="Closed Won")])

        activity = store.activities[0]
        assert activity.title == AUTO_ASSIGN_TITLE
        assert activity.from_stage_id == "stage-2"
        assert activity.to_stage_id == "stage-5"
        assert activity.metadata == {
            "confidence": 75,
            "aiRecommendation": "Closed Won",
            "leadScore": 90,
            "leadStatus": "WON",
        }

    @pytest.mark.asyncio
    async def test_skip_existing_leaves_assigned_contacts(self, store, persistence):
        add_contact(store, "c1", stage_order=1)

        result = await persistence.batch_auto_assign([assignment("c1", 90, mode=UpdateMode.SKIP_EXISTING)])

        assert result.skipped_count == 1
        assert result.assigned_count == 0
        assert store.contacts["c1"].stage_id == "stage-1"
        assert store.activities == []

    @pytest.mark.asyncio
    async def test_downgrade_is_refused(self, store, persistence):
        add_contact(store, "c1", stage_order=4)

        result = await persistence.batch_auto_assign([assignment("c1", 30, status=LeadStatus.CONTACTED)])

        assert result.skipped_count == 1
        assert store.contacts["c1"].stage_id == "stage-4"

    @pytest.mark.asyncio
    async def test_downgrade_allowed_when_protection_disabled(self, store):
        persistence = BatchPersistence(store, PipelineCache(store), DowngradePolicy(enabled=False))
        add_contact(store, "c1", stage_order=4)

        result = await persistence.batch_auto_assign([assignment("c1", 30, status=LeadStatus.CONTACTED)])

        assert result.assigned_count == 1
        assert store.contacts["c1"].stage_id == "stage-2"

    @pytest.mark.asyncio
    async def test_missing_contact_and_pipeline_are_failures(self, store, persistence):
        add_contact(store, "c1")

        result = await persistence.batch_auto_assign([
            assignment("ghost", 50),
            assignment("c1", 50, pipeline_id="missing"),
        ])

        assert result.failed_count == 2
        assert {e["error"] for e in result.errors} == {"Contact not found", "Pipeline missing not found"}

    @pytest.mark.asyncio
    async def test_activity_failure_does_not_fail_assignment(self, store, persistence):
        add_contact(store, "c1")

        with patch.object(store, "create_activities", AsyncMock(side_effect=RuntimeError("down"))), \
                patch.object(store, "create_activity", AsyncMock(side_effect=RuntimeError("down"))):
            result = await persistence.batch_auto_assign([assignment("c1", 50)])

        assert result.assigned_count == 1
        assert result.failed_count == 0
