"""Database module for contact sync."""

from .connection import get_connection, init_db
from .postgres_store import PostgresSyncStore

__all__ = [
    "PostgresSyncStore",
    "get_connection",
    "init_db",
]
