"""
Pytest configuration for contact sync tests.

Test Tier System:
- fast (default): Pure unit tests, all I/O mocked or in-memory
- medium: API TestClient, aiohttp/openai adapter tests
- slow: Anything that talks to a real Graph API, classifier or database

Run tiers:
- pytest                          # Fast + medium (default addopts excludes slow)
- pytest -m fast                  # Fast only
- pytest -m medium                # Medium only
- pytest -m slow                  # Slow only
- pytest --override-ini="addopts=" -v   # Full suite (all tiers)

Note: Unmarked tests are auto-assigned to 'fast' tier. To add a new test:
- No marker needed for fast (unit) tests
- Add @pytest.mark.medium for API TestClient / adapter tests
- Add @pytest.mark.slow for external API tests
- Tests marked @pytest.mark.integration (without tier) default to 'medium'

API Key Safety:
- Fast/medium tests force-set a fake CLASSIFIER_API_KEY so a mis-wired
  container can never spend real classifier quota
"""

import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, List, Optional

import pytest

# Add project root to path for imports
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from contact_sync.errors import ConversationSourceError  # noqa: E402
from contact_sync.models import (  # noqa: E402
    Page,
    Pipeline,
    Platform,
    SourceConversation,
    SourceMessage,
    SourceParticipant,
    Stage,
    StageType,
    UpdateMode,
)
from contact_sync.store.memory import InMemorySyncStore  # noqa: E402


# =============================================================================
# Tier Auto-Assignment
# =============================================================================

TIER_MARKERS = ("fast", "medium", "slow")


def pytest_collection_modifyitems(config, items):
    """Give every unmarked test a tier so `-m` selections never miss one.

    Plain tests become fast; tests marked only `integration` become medium.
    Skipped tests are left alone.
    """
    for item in items:
        marker_names = {marker.name for marker in item.iter_markers()}
        if marker_names & set(TIER_MARKERS) or "skip" in marker_names:
            continue
        tier = pytest.mark.medium if "integration" in marker_names else pytest.mark.fast
        item.add_marker(tier)


# =============================================================================
# Pytest Configuration
# =============================================================================

FAKE_CLASSIFIER_KEY = "test-fake-classifier-key"


def pytest_configure(config):
    """Keep fast and medium runs off the real classifier.

    A run that can include slow tests keeps a real CLASSIFIER_API_KEY from
    the environment; any other run has it replaced with a fake.
    """
    markexpr = getattr(config.option, "markexpr", "") or ""
    selects_slow = not markexpr or ("slow" in markexpr and "not slow" not in markexpr)

    if selects_slow:
        os.environ.setdefault("CLASSIFIER_API_KEY", FAKE_CLASSIFIER_KEY)
    else:
        os.environ["CLASSIFIER_API_KEY"] = FAKE_CLASSIFIER_KEY


# =============================================================================
# Session-Scoped Fixtures
# =============================================================================

@pytest.fixture(scope="session")
def project_root():
    """Return project root path (session-scoped for efficiency)."""
    return PROJECT_ROOT


# =============================================================================
# Fakes
# =============================================================================

BASE_TIME = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


class FakeConversationSource:
    """In-memory ConversationSource.

    ``conversations`` maps platform -> list of SourceConversation;
    ``messages`` maps conversation ID -> messages, newest first.
    ``message_errors`` maps conversation ID -> list of exceptions raised on
    successive get_messages calls before succeeding.
    """

    def __init__(
        self,
        conversations: Optional[Dict[Platform, List[SourceConversation]]] = None,
        messages: Optional[Dict[str, List[SourceMessage]]] = None,
    ):
        self.conversations = conversations or {}
        self.messages = messages or {}
        self.message_errors: Dict[str, List[Exception]] = {}
        self.list_error: Dict[Platform, Exception] = {}
        self.message_calls: List[str] = []
        self.closed = False

    async def list_conversations(self, account_id, platform=Platform.MESSENGER):
        return [c async for c in self.stream_conversations(account_id, platform)]

    async def stream_conversations(self, account_id, platform=Platform.MESSENGER):
        if platform in self.list_error:
            raise self.list_error[platform]
        for conversation in self.conversations.get(platform, []):
            yield conversation

    async def get_messages(self, conversation_id, max_pages=None):
        self.message_calls.append(conversation_id)
        pending = self.message_errors.get(conversation_id)
        if pending:
            raise pending.pop(0)
        return list(self.messages.get(conversation_id, []))

    async def close(self):
        self.closed = True


def make_conversation(conversation_id, participant_id, page_account="page-ext", minutes_ago=0, name=None):
    return SourceConversation(
        id=conversation_id,
        updated_time=BASE_TIME - timedelta(minutes=minutes_ago),
        participants=[
            SourceParticipant(id=participant_id, name=name),
            SourceParticipant(id=page_account, name="Acme Page"),
        ],
    )


def make_messages(participant_id, name, texts, page_account="page-ext", minutes_ago=0):
    """Build a newest-first message list alternating customer / page turns."""
    messages = []
    for i, text in enumerate(texts):
        from_customer = i % 2 == 0
        messages.append(SourceMessage(
            id=f"m-{participant_id}-{i}",
            sender_id=participant_id if from_customer else page_account,
            sender_name=name if from_customer else "Acme Page",
            text=text,
            created_time=BASE_TIME - timedelta(minutes=minutes_ago + len(texts) - i),
        ))
    messages.reverse()
    return messages


def make_pipeline(ranges=((0, 20), (21, 40), (41, 60), (61, 80), (81, 100)), pipeline_id="pipe-1"):
    names = ["New Lead", "Contacted", "Qualified", "Negotiating", "Closed Won"]
    types = [StageType.LEAD, StageType.LEAD, StageType.IN_PROGRESS, StageType.IN_PROGRESS, StageType.WON]
    stages = [
        Stage(
            id=f"stage-{i + 1}",
            pipeline_id=pipeline_id,
            name=names[i],
            type=types[i],
            order=i + 1,
            lead_score_min=low,
            lead_score_max=high,
        )
        for i, (low, high) in enumerate(ranges)
    ]
    return Pipeline(id=pipeline_id, name="Sales", stages=stages)


def source_error(kind, message="boom", code=None):
    return ConversationSourceError(kind, message, code=code)


@pytest.fixture
def memory_store():
    return InMemorySyncStore()


@pytest.fixture
def seeded_store(memory_store):
    """Store with one page wired to a five-stage pipeline."""
    memory_store.add_pipeline(make_pipeline())
    memory_store.add_page(Page(
        id="page-1",
        page_id="page-ext",
        name="Acme",
        access_token="page-token",
        auto_pipeline_id="pipe-1",
        auto_pipeline_mode=UpdateMode.UPDATE_EXISTING,
    ))
    return memory_store
