"""PostgreSQL connections for the sync store."""

import logging
import os
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

import psycopg2
from psycopg2.extensions import connection as PgConnection
from psycopg2.extras import RealDictCursor

from ..config import DEFAULT_DATABASE_URL

logger = logging.getLogger(__name__)

SCHEMA_FILE = Path(__file__).with_name("schema.sql")


def resolve_dsn(dsn: Optional[str] = None) -> str:
    """Explicit DSN first, then DATABASE_URL, then the local default."""
    return dsn or os.getenv("DATABASE_URL") or DEFAULT_DATABASE_URL


@contextmanager
def get_connection(dsn: Optional[str] = None) -> Iterator[PgConnection]:
    """Open a connection whose cursors return dict rows.

    The block runs as one transaction: committed when it exits cleanly,
    rolled back when it raises. The connection is always closed.
    """
    conn = psycopg2.connect(resolve_dsn(dsn), cursor_factory=RealDictCursor)
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def init_db(dsn: Optional[str] = None) -> None:
    """Create the sync tables. Statements are idempotent, so reruns are safe."""
    ddl = SCHEMA_FILE.read_text()
    with get_connection(dsn) as conn, conn.cursor() as cur:
        cur.execute(ddl)
    logger.info(f"Applied schema from {SCHEMA_FILE.name}")
