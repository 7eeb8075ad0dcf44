"""
Transcript cache with differential re-sync.

Fetched transcripts are cached per conversation for an hour. When a contact
has been synced before, only messages newer than its last sync point are
handed to the classifier.
"""

import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Sequence

from .interfaces import ConversationSource
from .models import Contact, SourceMessage, TranscriptMessage

logger = logging.getLogger(__name__)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass
class CacheEntry:
    conversation_id: str
    messages: List[TranscriptMessage]
    cached_at: float
    last_message_time: Optional[datetime] = None


@dataclass
class DifferentialFetch:
    """Full transcript plus the part of it the contact has not been analyzed on."""

    messages: List[TranscriptMessage]
    new_messages: List[TranscriptMessage]
    from_cache: bool


class MessageCache:
    """TTL- and capacity-bounded transcript cache.

    Entries are kept in insertion order, so when full the entry cached the
    longest ago is evicted first. An entry whose age has reached the TTL is
    treated as absent.
    """

    DEFAULT_TTL_SECONDS = 3600
    DEFAULT_MAX_ENTRIES = 10000

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max(1, max_entries)
        self._clock = clock
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self.hits = 0
        self.misses = 0

    def get_entry(self, conversation_id: str) -> Optional[CacheEntry]:
        entry = self._entries.get(conversation_id)
        if entry is None:
            self.misses += 1
            return None
        if self._clock() - entry.cached_at >= self.ttl_seconds:
            del self._entries[conversation_id]
            self.misses += 1
            return None
        self.hits += 1
        return entry

    def get(self, conversation_id: str) -> Optional[List[TranscriptMessage]]:
        entry = self.get_entry(conversation_id)
        return entry.messages if entry else None

    def put(
        self,
        conversation_id: str,
        messages: List[TranscriptMessage],
        last_message_time: Optional[datetime] = None,
    ) -> None:
        if conversation_id in self._entries:
            del self._entries[conversation_id]
        elif len(self._entries) >= self.max_entries:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug(f"Message cache full, evicted {evicted}")
        self._entries[conversation_id] = CacheEntry(
            conversation_id=conversation_id,
            messages=list(messages),
            cached_at=self._clock(),
            last_message_time=_aware(last_message_time),
        )

    def invalidate(self, conversation_id: str) -> None:
        self._entries.pop(conversation_id, None)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def stats(self) -> Dict[str, int]:
        return {
            "size": len(self._entries),
            "max_size": self.max_entries,
            "hits": self.hits,
            "misses": self.misses,
        }

    async def fetch_differential(
        self,
        source: ConversationSource,
        conversation_id: str,
        contact: Optional[Contact] = None,
        max_pages: Optional[int] = None,
        updated_time: Optional[datetime] = None,
    ) -> DifferentialFetch:
        """Return the transcript for a conversation, cache-aware.

        A cached transcript older than the conversation's ``updated_time`` is
        refetched even within the TTL, since it is known to be missing turns.
        """
        entry = self.get_entry(conversation_id)
        updated_time = _aware(updated_time)
        if (
            entry is not None
            and updated_time is not None
            and entry.last_message_time is not None
            and updated_time > entry.last_message_time
        ):
            entry = None

        from_cache = entry is not None
        if entry is not None:
            messages = entry.messages
        else:
            raw = await source.get_messages(conversation_id, max_pages)
            messages = to_transcript(raw)
            timestamps = [m.timestamp for m in messages if m.timestamp is not None]
            self.put(conversation_id, messages, max(timestamps) if timestamps else None)

        since = last_sync_timestamp(contact)
        return DifferentialFetch(
            messages=messages,
            new_messages=filter_new_messages(messages, since),
            from_cache=from_cache,
        )


def to_transcript(raw_messages: Sequence[SourceMessage]) -> List[TranscriptMessage]:
    """Convert source messages (newest first) to a transcript (oldest first).

    Messages without text (attachments, stickers) are dropped.
    """
    transcript = [
        TranscriptMessage(
            sender=m.sender_name or m.sender_username or m.sender_id or "Unknown",
            sender_id=m.sender_id,
            text=m.text,
            timestamp=_aware(m.created_time),
        )
        for m in raw_messages
        if m.text
    ]
    transcript.reverse()
    return transcript


def last_sync_timestamp(contact: Optional[Contact]) -> Optional[datetime]:
    """Latest of the contact's last analysis and last interaction, if any."""
    if contact is None:
        return None
    candidates = [
        _aware(t) for t in (contact.ai_context_updated_at, contact.last_interaction) if t is not None
    ]
    return max(candidates) if candidates else None


def filter_new_messages(
    messages: Sequence[TranscriptMessage], since: Optional[datetime]
) -> List[TranscriptMessage]:
    """Messages after ``since``; all of them when ``since`` is None.

    Messages without a timestamp are always kept.
    """
    if since is None:
        return list(messages)
    since = _aware(since)
    return [m for m in messages if m.timestamp is None or m.timestamp > since]
