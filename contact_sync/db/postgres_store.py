"""
PostgreSQL SyncStore.

psycopg2 is blocking, so every public method runs its query in a worker
thread via asyncio.to_thread. Each call opens its own connection through
get_connection(), which commits on success and rolls back on error.
"""

import asyncio
import logging
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

from psycopg2.extras import Json, execute_values

from ..models import (
    ActivityRecord,
    ApiKey,
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
from .connection import get_connection

logger = logging.getLogger(__name__)

# Columns update_job may touch
JOB_COLUMNS = {
    "status", "mode", "total_contacts", "synced_contacts", "failed_contacts",
    "errors", "token_expired", "started_at", "completed_at",
}

# Columns update_contacts may touch
CONTACT_UPDATE_COLUMNS = {
    "pipeline_id", "stage_id", "stage_entered_at", "lead_score", "lead_status",
    "ai_context", "ai_context_updated_at", "first_name", "last_name", "last_interaction",
}

CONTACT_SELECT = """
    SELECT c.*, row_to_json(s) AS stage
    FROM contacts c
    LEFT JOIN pipeline_stages s ON s.id = c.stage_id
"""

# One statement per event so concurrent health reports never lose updates
KEY_EVENT_SQL = {
    KeyEvent.SUCCESS: """
        UPDATE api_keys SET
            total_requests = total_requests + 1,
            consecutive_failures = 0,
            last_used_at = NOW(),
            last_success_at = NOW()
        WHERE id = %s RETURNING *
    """,
    KeyEvent.FAILURE: """
        UPDATE api_keys SET
            total_requests = total_requests + 1,
            failed_requests = failed_requests + 1,
            consecutive_failures = consecutive_failures + 1,
            last_used_at = NOW()
        WHERE id = %s RETURNING *
    """,
    KeyEvent.RATE_LIMITED: """
        UPDATE api_keys SET
            status = 'RATE_LIMITED',
            rate_limited_at = NOW(),
            total_requests = total_requests + 1,
            failed_requests = failed_requests + 1,
            consecutive_failures = consecutive_failures + 1,
            last_used_at = NOW()
        WHERE id = %s RETURNING *
    """,
    KeyEvent.INVALID: """
        UPDATE api_keys SET
            status = 'DISABLED',
            disabled_reason = %s,
            total_requests = total_requests + 1,
            failed_requests = failed_requests + 1,
            last_used_at = NOW()
        WHERE id = %s RETURNING *
    """,
}


def _db_value(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, list) and value and isinstance(value[0], JobError):
        return Json([e.model_dump() for e in value])
    if isinstance(value, (list, dict)):
        return Json(value)
    return value


def _contact_from_row(row: Dict[str, Any]) -> Contact:
    data = dict(row)
    stage = data.pop("stage", None)
    return Contact(**data, stage=Stage(**stage) if stage else None)


class PostgresSyncStore:
    """SyncStore backed by PostgreSQL (see schema.sql)."""

    def __init__(self, dsn: Optional[str] = None):
        self.dsn = dsn

    def _fetchall(self, sql: str, params: tuple = ()) -> List[Dict[str, Any]]:
        with get_connection(self.dsn) as conn:
            with conn.cursor() as cur:
                cur.execute(sql, params)
                return [dict(r) for r in cur.fetchall()]

    def _fetchone(self, sql: str, params: tuple = ()) -> Optional[Dict[str, Any]]:
        with get_connection(self.dsn) as conn:
            with conn.cursor() as cur:
                cur.execute(sql, params)
                row = cur.fetchone()
                return dict(row) if row else None

    def _execute(self, sql: str, params: tuple = ()) -> int:
        with get_connection(self.dsn) as conn:
            with conn.cursor() as cur:
                cur.execute(sql, params)
                return cur.rowcount

    # -------------------------------------------------------------------------
    # Jobs
    # -------------------------------------------------------------------------

    async def create_job(self, page_id: str, mode: SyncMode) -> SyncJob:
        row = await asyncio.to_thread(
            self._fetchone,
            "INSERT INTO sync_jobs (facebook_page_id, status, mode) VALUES (%s, %s, %s) RETURNING *",
            (page_id, SyncStatus.PENDING.value, mode.value),
        )
        return SyncJob(**row)

    async def get_job(self, job_id: str) -> Optional[SyncJob]:
        row = await asyncio.to_thread(self._fetchone, "SELECT * FROM sync_jobs WHERE id = %s", (job_id,))
        return SyncJob(**row) if row else None

    async def find_active_job(self, page_id: str) -> Optional[SyncJob]:
        row = await asyncio.to_thread(
            self._fetchone,
            """
            SELECT * FROM sync_jobs
            WHERE facebook_page_id = %s AND status IN ('PENDING', 'IN_PROGRESS')
            ORDER BY created_at DESC LIMIT 1
            """,
            (page_id,),
        )
        return SyncJob(**row) if row else None

    async def get_latest_job(self, page_id: str) -> Optional[SyncJob]:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT * FROM sync_jobs WHERE facebook_page_id = %s ORDER BY created_at DESC LIMIT 1",
            (page_id,),
        )
        return SyncJob(**row) if row else None

    async def update_job(self, job_id: str, **fields) -> None:
        unknown = set(fields) - JOB_COLUMNS
        if unknown:
            raise ValueError(f"Unknown sync job field(s): {sorted(unknown)}")
        if not fields:
            return
        assignments = ", ".join(f"{column} = %s" for column in fields)
        params = tuple(_db_value(v) for v in fields.values()) + (job_id,)
        await asyncio.to_thread(self._execute, f"UPDATE sync_jobs SET {assignments} WHERE id = %s", params)

    async def finish_job(self, job_id: str, **fields) -> bool:
        unknown = set(fields) - JOB_COLUMNS
        if unknown:
            raise ValueError(f"Unknown sync job field(s): {sorted(unknown)}")
        assignments = ", ".join(f"{column} = %s" for column in fields)
        params = tuple(_db_value(v) for v in fields.values()) + (job_id,)
        updated = await asyncio.to_thread(
            self._execute,
            f"UPDATE sync_jobs SET {assignments} "
            "WHERE id = %s AND status IN ('PENDING', 'IN_PROGRESS')",
            params,
        )
        return updated > 0

    async def fail_stale_jobs(self, message: str) -> List[str]:
        rows = await asyncio.to_thread(
            self._fetchall,
            """
            UPDATE sync_jobs
            SET status = 'FAILED', completed_at = NOW(), errors = %s
            WHERE status IN ('PENDING', 'IN_PROGRESS')
            RETURNING id
            """,
            (Json([{"platform": None, "id": None, "error": message, "code": None}]),),
        )
        return [r["id"] for r in rows]

    # -------------------------------------------------------------------------
    # Pages and pipelines
    # -------------------------------------------------------------------------

    async def get_page(self, page_id: str) -> Optional[Page]:
        row = await asyncio.to_thread(self._fetchone, "SELECT * FROM facebook_pages WHERE id = %s", (page_id,))
        return Page(**row) if row else None

    async def mark_page_synced(self, page_id: str, synced_at: datetime) -> None:
        await asyncio.to_thread(
            self._execute, "UPDATE facebook_pages SET last_synced_at = %s WHERE id = %s", (synced_at, page_id)
        )

    def _get_pipeline(self, pipeline_id: str) -> Optional[Pipeline]:
        with get_connection(self.dsn) as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT id, name FROM pipelines WHERE id = %s", (pipeline_id,))
                row = cur.fetchone()
                if row is None:
                    return None
                cur.execute(
                    'SELECT * FROM pipeline_stages WHERE pipeline_id = %s ORDER BY "order"',
                    (pipeline_id,),
                )
                stages = [Stage(**dict(s)) for s in cur.fetchall()]
        return Pipeline(id=row["id"], name=row["name"], stages=stages)

    async def get_pipeline(self, pipeline_id: str) -> Optional[Pipeline]:
        return await asyncio.to_thread(self._get_pipeline, pipeline_id)

    def _update_stage_ranges(self, pipeline_id: str, ranges: Dict[str, Tuple[int, int]]) -> None:
        rows = [(stage_id, low, high) for stage_id, (low, high) in ranges.items()]
        with get_connection(self.dsn) as conn:
            with conn.cursor() as cur:
                execute_values(
                    cur,
                    """
                    UPDATE pipeline_stages AS s
                    SET lead_score_min = v.low, lead_score_max = v.high
                    FROM (VALUES %s) AS v(id, low, high)
                    WHERE s.id = v.id
                    """,
                    rows,
                )
                if cur.rowcount != len(rows):
                    logger.warning(
                        f"Updated {cur.rowcount} of {len(rows)} stage range(s) for pipeline {pipeline_id}"
                    )

    async def update_stage_ranges(self, pipeline_id: str, ranges: Dict[str, Tuple[int, int]]) -> None:
        if ranges:
            await asyncio.to_thread(self._update_stage_ranges, pipeline_id, ranges)

    # -------------------------------------------------------------------------
    # Contacts
    # -------------------------------------------------------------------------

    async def find_contacts(
        self, page_id: str, platform: Platform, participant_ids: Sequence[str]
    ) -> Dict[str, Contact]:
        if not participant_ids:
            return {}
        rows = await asyncio.to_thread(
            self._fetchall,
            CONTACT_SELECT + " WHERE c.page_id = %s AND c.platform = %s AND c.participant_id = ANY(%s)",
            (page_id, platform.value, list(participant_ids)),
        )
        return {r["participant_id"]: _contact_from_row(r) for r in rows}

    async def get_contacts(self, contact_ids: Sequence[str]) -> List[Contact]:
        if not contact_ids:
            return []
        rows = await asyncio.to_thread(
            self._fetchall, CONTACT_SELECT + " WHERE c.id = ANY(%s)", (list(contact_ids),)
        )
        return [_contact_from_row(r) for r in rows]

    async def upsert_contact(self, record: ContactUpsert) -> Contact:
        sql = """
        WITH upserted AS (
            INSERT INTO contacts (
                page_id, platform, participant_id, first_name, last_name,
                last_interaction, ai_context, ai_context_updated_at
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (page_id, platform, participant_id) DO UPDATE SET
                first_name = COALESCE(EXCLUDED.first_name, contacts.first_name),
                last_name = COALESCE(EXCLUDED.last_name, contacts.last_name),
                last_interaction = COALESCE(EXCLUDED.last_interaction, contacts.last_interaction),
                ai_context = COALESCE(EXCLUDED.ai_context, contacts.ai_context),
                ai_context_updated_at = COALESCE(EXCLUDED.ai_context_updated_at, contacts.ai_context_updated_at)
            RETURNING *
        )
        SELECT c.*, row_to_json(s) AS stage
        FROM upserted c
        LEFT JOIN pipeline_stages s ON s.id = c.stage_id
        """
        row = await asyncio.to_thread(
            self._fetchone,
            sql,
            (
                record.page_id, record.platform.value, record.participant_id,
                record.first_name, record.last_name, record.last_interaction,
                record.ai_context, record.ai_context_updated_at,
            ),
        )
        return _contact_from_row(row)

    async def update_contacts(self, contact_ids: Sequence[str], data: dict) -> int:
        unknown = set(data) - CONTACT_UPDATE_COLUMNS
        if unknown:
            raise ValueError(f"Unknown contact field(s): {sorted(unknown)}")
        if not contact_ids or not data:
            return 0
        assignments = ", ".join(f"{column} = %s" for column in data)
        params = tuple(_db_value(v) for v in data.values()) + (list(contact_ids),)
        return await asyncio.to_thread(
            self._execute, f"UPDATE contacts SET {assignments} WHERE id = ANY(%s)", params
        )

    def _insert_activities(self, records: Sequence[ActivityRecord], skip_duplicates: bool) -> int:
        rows = [
            (
                r.contact_id, r.type, r.title, r.description,
                r.from_stage_id, r.to_stage_id, r.user_id, Json(r.metadata),
            )
            for r in records
        ]
        sql = """
        INSERT INTO contact_activities (
            contact_id, type, title, description, from_stage_id, to_stage_id, user_id, metadata
        ) VALUES %s
        """
        if skip_duplicates:
            sql += " ON CONFLICT DO NOTHING"
        with get_connection(self.dsn) as conn:
            with conn.cursor() as cur:
                execute_values(cur, sql, rows)
                return cur.rowcount

    async def create_activities(self, records: Sequence[ActivityRecord], skip_duplicates: bool = True) -> int:
        if not records:
            return 0
        return await asyncio.to_thread(self._insert_activities, records, skip_duplicates)

    async def create_activity(self, record: ActivityRecord) -> None:
        await asyncio.to_thread(self._insert_activities, [record], False)

    # -------------------------------------------------------------------------
    # Credentials
    # -------------------------------------------------------------------------

    async def list_active_key_ids(self) -> List[str]:
        rows = await asyncio.to_thread(
            self._fetchall, "SELECT id FROM api_keys WHERE status = 'ACTIVE' ORDER BY created_at ASC"
        )
        return [r["id"] for r in rows]

    async def list_keys(self) -> List[ApiKey]:
        rows = await asyncio.to_thread(self._fetchall, "SELECT * FROM api_keys ORDER BY created_at ASC")
        return [ApiKey(**r) for r in rows]

    async def get_key(self, key_id: str) -> Optional[ApiKey]:
        row = await asyncio.to_thread(self._fetchone, "SELECT * FROM api_keys WHERE id = %s", (key_id,))
        return ApiKey(**row) if row else None

    async def apply_key_event(
        self, key_id: str, event: KeyEvent, reason: Optional[str] = None
    ) -> Optional[ApiKey]:
        params = (reason, key_id) if event == KeyEvent.INVALID else (key_id,)
        row = await asyncio.to_thread(self._fetchone, KEY_EVENT_SQL[event], params)
        return ApiKey(**row) if row else None
