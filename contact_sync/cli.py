#!/usr/bin/env python
"""
Contact Sync CLI - run and inspect sync jobs without the API.

Usage:
    contact-sync sync <page_id>                 # Full sync, waits for completion
    contact-sync sync <page_id> --mode CONTACTS_ONLY
    contact-sync status <job_id>                # Show job progress
    contact-sync cancel <job_id>                # Request cancellation
    contact-sync init-db                        # Create tables
"""

import argparse
import asyncio
import json
import logging
from typing import List, Optional

from .errors import ContactSyncError
from .logging_utils import configure_safe_logging
from .models import SyncJob, SyncMode, SyncStatus
from .services import ServiceContainer

logger = logging.getLogger(__name__)


def format_job(job: SyncJob, verbose: bool = False) -> str:
    lines = [
        f"Job {job.id} ({job.mode.value}) - {job.status.value}",
        f"  synced: {job.synced_contacts}  failed: {job.failed_contacts}  total: {job.total_contacts}",
    ]
    if job.token_expired:
        lines.append("  page access token expired - reconnect the page")
    if job.errors:
        lines.append(f"  errors: {len(job.errors)}")
        shown = job.errors if verbose else job.errors[:5]
        for error in shown:
            lines.append(f"    - [{error.platform or '-'}] {error.id or '-'}: {error.error}")
    return "\n".join(lines)


async def cmd_sync(container: ServiceContainer, args) -> int:
    job, created = await container.orchestrator.start_or_join(
        args.page_id, SyncMode(args.mode), args.contact or None
    )
    if not created:
        print(f"Sync already in progress for page {args.page_id}: job {job.id}")
        return 1

    print(f"Started job {job.id}")
    await container.supervisor.drain()
    job = await container.orchestrator.get_job_status(job.id)
    print(format_job(job, args.verbose))
    return 0 if job.status == SyncStatus.COMPLETED else 1


async def cmd_status(container: ServiceContainer, args) -> int:
    job = await container.orchestrator.get_job_status(args.job_id)
    if args.json:
        print(json.dumps(job.model_dump(mode="json"), indent=2))
    else:
        print(format_job(job, args.verbose))
    return 0


async def cmd_cancel(container: ServiceContainer, args) -> int:
    job = await container.orchestrator.cancel(args.job_id)
    print(f"Job {job.id}: {job.status.value}")
    return 0


def cmd_init_db(args) -> int:
    from .db.connection import init_db

    init_db()
    print("Schema created")
    return 0


async def _run(args) -> int:
    container = ServiceContainer.create()
    try:
        return await args.func(container, args)
    except ContactSyncError as e:
        print(f"Error: {e}")
        return 1
    finally:
        await container.aclose()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Contact Sync CLI - run and inspect sync jobs",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  contact-sync sync PAGE_ID                          # Full sync
  contact-sync sync PAGE_ID --mode ANALYSIS_ONLY     # Re-score existing contacts
  contact-sync sync PAGE_ID --mode SELECTED_SUBSET -c C1 -c C2
  contact-sync status JOB_ID --json
        """,
    )
    parser.add_argument("--log-level", default="INFO", help="Logging level")
    subparsers = parser.add_subparsers(dest="command", help="Command")

    # sync
    p_sync = subparsers.add_parser("sync", help="Run a sync for a page and wait for it")
    p_sync.add_argument("page_id", help="Internal page ID")
    p_sync.add_argument(
        "-m", "--mode", default=SyncMode.FULL.value,
        choices=[m.value for m in SyncMode], help="Sync mode",
    )
    p_sync.add_argument("-c", "--contact", action="append", help="Contact ID (SELECTED_SUBSET, repeatable)")
    p_sync.add_argument("-v", "--verbose", action="store_true", help="Show all errors")
    p_sync.set_defaults(func=cmd_sync)

    # status
    p_status = subparsers.add_parser("status", help="Show job progress")
    p_status.add_argument("job_id", help="Sync job ID")
    p_status.add_argument("--json", action="store_true", help="Print raw JSON")
    p_status.add_argument("-v", "--verbose", action="store_true", help="Show all errors")
    p_status.set_defaults(func=cmd_status)

    # cancel
    p_cancel = subparsers.add_parser("cancel", help="Request job cancellation")
    p_cancel.add_argument("job_id", help="Sync job ID")
    p_cancel.set_defaults(func=cmd_cancel)

    # init-db
    p_init = subparsers.add_parser("init-db", help="Create database tables")
    p_init.set_defaults(func=cmd_init_db)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    configure_safe_logging(getattr(logging, args.log_level.upper(), logging.INFO))

    if args.command == "init-db":
        return cmd_init_db(args)
    return asyncio.run(_run(args))


if __name__ == "__main__":
    raise SystemExit(main())
