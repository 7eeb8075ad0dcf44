"""
CLI Tests

Tests for the contact-sync command line entry point.
Run with: pytest tests/test_cli.py -v
"""

import json
from unittest.mock import AsyncMock, Mock, patch

import pytest

from contact_sync.cli import build_parser, format_job, main
from contact_sync.config import Settings
from contact_sync.models import JobError, Platform, SyncJob, SyncMode, SyncStatus
from contact_sync.services import ServiceContainer

from conftest import FakeConversationSource, make_conversation, make_messages


@pytest.fixture
def container(seeded_store):
    source = FakeConversationSource(
        conversations={Platform.MESSENGER: [make_conversation("c1", "p1")]},
        messages={"c1": make_messages("p1", "Jane Doe", ["hello"])},
    )
    return ServiceContainer.create(
        Settings(batch_size=5),
        store=seeded_store,
        classifier=Mock(complete=AsyncMock(return_value=""), aclose=AsyncMock()),
        source_factory=lambda token: source,
    )


@pytest.fixture
def run_cli(container):
    def run(*argv):
        with patch("contact_sync.cli.ServiceContainer.create", return_value=container), \
                patch("contact_sync.cli.configure_safe_logging"):
            return main(list(argv))
    return run


class TestParser:
    def test_sync_arguments(self):
        args = build_parser().parse_args(["sync", "page-1", "-m", "SELECTED_SUBSET", "-c", "a", "-c", "b"])

        assert args.page_id == "page-1"
        assert args.mode == "SELECTED_SUBSET"
        assert args.contact == ["a", "b"]

    def test_rejects_unknown_mode(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["sync", "page-1", "--mode", "EVERYTHING"])

    def test_no_command_prints_help(self, capsys):
        assert main([]) == 0
        assert "usage" in capsys.readouterr().out.lower()


class TestFormatJob:
    def test_includes_counts_and_token_warning(self):
        job = SyncJob(
            id="job-1",
            facebook_page_id="page-1",
            status=SyncStatus.FAILED,
            mode=SyncMode.FULL,
            synced_contacts=3,
            failed_contacts=1,
            token_expired=True,
            errors=[JobError(platform="Messenger", id="p9", error="boom")],
        )

        text = format_job(job)

        assert "Job job-1 (FULL) - FAILED" in text
        assert "synced: 3  failed: 1" in text
        assert "token expired" in text
        assert "[Messenger] p9: boom" in text

    def test_truncates_errors_unless_verbose(self):
        errors = [JobError(error=f"e{i}") for i in range(8)]
        job = SyncJob(id="j", facebook_page_id="p", errors=errors)

        assert format_job(job).count("    - ") == 5
        assert format_job(job, verbose=True).count("    - ") == 8


class TestCommands:
    def test_sync_waits_for_completion(self, run_cli, seeded_store, capsys):
        assert run_cli("sync", "page-1") == 0

        out = capsys.readouterr().out
        assert "Started job" in out
        assert "COMPLETED" in out
        assert len(seeded_store.contacts) == 1

    def test_sync_unknown_page_is_an_error(self, run_cli, capsys):
        assert run_cli("sync", "nope") == 1
        assert "Error: Page nope not found" in capsys.readouterr().out

    def test_status_json(self, run_cli, seeded_store, capsys):
        seeded_store.jobs["job-1"] = SyncJob(id="job-1", facebook_page_id="page-1", synced_contacts=2)

        assert run_cli("status", "job-1", "--json") == 0

        body = json.loads(capsys.readouterr().out)
        assert body["id"] == "job-1"
        assert body["synced_contacts"] == 2

    def test_status_unknown_job(self, run_cli, capsys):
        assert run_cli("status", "missing") == 1
        assert "not found" in capsys.readouterr().out

    def test_cancel(self, run_cli, seeded_store, capsys):
        seeded_store.jobs["job-1"] = SyncJob(id="job-1", facebook_page_id="page-1")

        assert run_cli("cancel", "job-1") == 0
        assert "job-1: CANCELLED" in capsys.readouterr().out
