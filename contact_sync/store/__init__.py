"""In-process store implementations."""

from .memory import InMemorySyncStore

__all__ = ["InMemorySyncStore"]
