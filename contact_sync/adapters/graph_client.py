"""
Graph API conversation source.

Reads Messenger (and linked Instagram) conversations and transcripts for a
page using the page access token.

- Async: uses aiohttp; one session per client, closed by ``close()``
- Retries 429 / 5xx / Graph throttling codes with exponential backoff and jitter
- Raw failures are mapped to ConversationSourceError exactly once, here
"""

import asyncio
import logging
import random
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, AsyncIterator, Dict, List, Optional

import aiohttp

from ..errors import ConversationSourceError, ProviderErrorKind
from ..models import Platform, SourceConversation, SourceMessage, SourceParticipant

logger = logging.getLogger(__name__)

# Graph error codes that mean "slow down" rather than "broken"
RATE_LIMIT_ERROR_CODES = {4, 17, 32, 613}
TOKEN_EXPIRED_ERROR_CODE = 190


def parse_graph_time(value: Optional[str]) -> Optional[datetime]:
    """Parse Graph timestamps like ``2024-01-05T10:00:00+0000``."""
    if not value:
        return None
    for fmt in ("%Y-%m-%dT%H:%M:%S%z", "%Y-%m-%dT%H:%M:%S.%f%z"):
        try:
            return datetime.strptime(value, fmt)
        except ValueError:
            continue
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        logger.debug(f"Unparseable Graph timestamp: {value!r}")
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def classify_graph_error(status: int, body: Any) -> ConversationSourceError:
    """Map an HTTP status and Graph error body to a ConversationSourceError."""
    error = body.get("error", {}) if isinstance(body, dict) else {}
    if not isinstance(error, dict):
        error = {}
    code = error.get("code")
    try:
        code = int(code) if code is not None else None
    except (TypeError, ValueError):
        code = None
    message = error.get("message") or f"Graph API returned HTTP {status}"

    if code == TOKEN_EXPIRED_ERROR_CODE:
        kind = ProviderErrorKind.CREDENTIAL_EXPIRED
    elif status == 429 or code in RATE_LIMIT_ERROR_CODES:
        kind = ProviderErrorKind.RATE_LIMITED
    elif status in (401, 403):
        kind = ProviderErrorKind.AUTH_FAILED
    elif status >= 500:
        kind = ProviderErrorKind.TRANSIENT
    else:
        kind = ProviderErrorKind.MALFORMED
    return ConversationSourceError(kind, message, code=code)


class GraphClient:
    """Conversation source backed by the Graph API."""

    BASE_URL = "https://graph.facebook.com/v19.0"

    # (connect_timeout, read_timeout) in seconds
    DEFAULT_TIMEOUT = (10, 30)

    MAX_RETRIES = 3
    RETRY_DELAY_BASE = 2  # seconds, exponential backoff: 2s, 4s, 8s
    RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}

    PAGE_SIZE = 100
    CONVERSATION_FIELDS = "participants,updated_time"
    MESSAGE_FIELDS = "id,message,from,created_time"

    def __init__(self, access_token: str, timeout: tuple = None, max_retries: int = None):
        if not access_token:
            raise ValueError("Page access token is required")
        self.access_token = access_token
        self.timeout = timeout or self.DEFAULT_TIMEOUT
        self.max_retries = max_retries if max_retries is not None else self.MAX_RETRIES
        self._session: Optional[aiohttp.ClientSession] = None

    @staticmethod
    def _parse_retry_after(header_value: str) -> int:
        """Parse a Retry-After header (seconds or HTTP-date) into seconds, minimum 1."""
        try:
            return max(1, int(header_value))
        except ValueError:
            try:
                retry_at = parsedate_to_datetime(header_value)
                if retry_at.tzinfo is None:
                    retry_at = retry_at.replace(tzinfo=timezone.utc)
                delta = (retry_at - datetime.now(timezone.utc)).total_seconds()
                return max(1, int(delta))
            except (ValueError, TypeError):
                return 10

    @staticmethod
    def _add_jitter(base_delay: float) -> float:
        """Add 0-50% of ``base_delay`` so concurrent retries spread out."""
        return base_delay + random.uniform(0, 0.5 * base_delay)

    def _get_aiohttp_session(self) -> aiohttp.ClientSession:
        timeout = aiohttp.ClientTimeout(
            connect=self.timeout[0],
            sock_read=self.timeout[1],
            total=self.timeout[0] + self.timeout[1],
        )
        return aiohttp.ClientSession(timeout=timeout, headers={"Accept": "application/json"})

    def _session_for_request(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = self._get_aiohttp_session()
        return self._session

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def _request_with_retry_async(self, url: str, params: Optional[dict] = None) -> dict:
        """GET a Graph URL, retrying throttling and server errors.

        ``url`` is either a path relative to BASE_URL or an absolute paging
        URL (which already carries its query string and token).

        Raises:
            ConversationSourceError: On non-retryable errors or after max retries
        """
        if not url.startswith("http"):
            url = f"{self.BASE_URL}{url}"
            params = dict(params or {})
            params["access_token"] = self.access_token

        session = self._session_for_request()
        last_error: Optional[ConversationSourceError] = None

        for attempt in range(self.max_retries + 1):
            try:
                async with session.get(url, params=params) as response:
                    if response.status < 400:
                        return await response.json(content_type=None)

                    try:
                        body = await response.json(content_type=None)
                    except (aiohttp.ContentTypeError, ValueError):
                        body = {}
                    error = classify_graph_error(response.status, body)

                    retryable = response.status in self.RETRYABLE_STATUS_CODES or (
                        error.kind == ProviderErrorKind.RATE_LIMITED
                    )
                    if not retryable or attempt >= self.max_retries:
                        raise error

                    retry_after = response.headers.get("Retry-After")
                    if response.status == 429 and retry_after:
                        base_delay = self._parse_retry_after(retry_after)
                    else:
                        base_delay = self.RETRY_DELAY_BASE * (2 ** attempt)
                    delay = self._add_jitter(base_delay)
                    logger.warning(
                        f"Graph API error {response.status} (code={error.code}), retrying in {delay:.1f}s "
                        f"(attempt {attempt + 1}/{self.max_retries + 1})"
                    )
                    last_error = error
                    await asyncio.sleep(delay)

            except aiohttp.ClientError as e:
                last_error = ConversationSourceError(ProviderErrorKind.TRANSIENT, f"Graph API connection error: {e}")
                if attempt >= self.max_retries:
                    raise last_error from e
                delay = self._add_jitter(self.RETRY_DELAY_BASE * (2 ** attempt))
                logger.warning(
                    f"Graph API connection error: {e}, "
                    f"retrying in {delay:.1f}s (attempt {attempt + 1}/{self.max_retries + 1})"
                )
                await asyncio.sleep(delay)

        raise last_error or ConversationSourceError(ProviderErrorKind.TRANSIENT, "Graph API retries exhausted")

    # -------------------------------------------------------------------------
    # Conversations
    # -------------------------------------------------------------------------

    async def stream_conversations(
        self, account_id: str, platform: Platform = Platform.MESSENGER
    ) -> AsyncIterator[SourceConversation]:
        """Yield conversations page by page, following ``paging.next``."""
        params = {"fields": self.CONVERSATION_FIELDS, "limit": self.PAGE_SIZE}
        if platform == Platform.INSTAGRAM:
            params["platform"] = "instagram"

        url: Optional[str] = f"/{account_id}/conversations"
        page_count = 0
        while url:
            data = await self._request_with_retry_async(url, params)
            page_count += 1
            for raw in data.get("data", []):
                conversation = self.parse_conversation(raw)
                if conversation is not None:
                    yield conversation

            url = (data.get("paging") or {}).get("next")
            params = None  # next URLs are absolute and carry their own query
        logger.debug(f"Fetched {page_count} page(s) of {platform.value} conversations for {account_id}")

    async def list_conversations(
        self, account_id: str, platform: Platform = Platform.MESSENGER
    ) -> List[SourceConversation]:
        return [c async for c in self.stream_conversations(account_id, platform)]

    @staticmethod
    def parse_conversation(raw: Dict[str, Any]) -> Optional[SourceConversation]:
        updated_time = parse_graph_time(raw.get("updated_time"))
        if not raw.get("id") or updated_time is None:
            logger.debug(f"Skipping conversation without id/updated_time: {raw}")
            return None
        participants = [
            SourceParticipant(id=str(p["id"]), name=p.get("name"), username=p.get("username"))
            for p in (raw.get("participants") or {}).get("data", [])
            if p.get("id")
        ]
        return SourceConversation(id=raw["id"], updated_time=updated_time, participants=participants)

    # -------------------------------------------------------------------------
    # Messages
    # -------------------------------------------------------------------------

    async def get_messages(self, conversation_id: str, max_pages: Optional[int] = None) -> List[SourceMessage]:
        """Return up to ``max_pages`` pages of messages, newest first."""
        params = {"fields": self.MESSAGE_FIELDS, "limit": self.PAGE_SIZE}
        url: Optional[str] = f"/{conversation_id}/messages"
        messages: List[SourceMessage] = []
        page_count = 0

        while url:
            data = await self._request_with_retry_async(url, params)
            messages.extend(self.parse_message(raw) for raw in data.get("data", []))
            page_count += 1
            if max_pages and page_count >= max_pages:
                break
            url = (data.get("paging") or {}).get("next")
            params = None

        return messages

    @staticmethod
    def parse_message(raw: Dict[str, Any]) -> SourceMessage:
        sender = raw.get("from") or {}
        return SourceMessage(
            id=raw.get("id"),
            sender_id=str(sender["id"]) if sender.get("id") else None,
            sender_name=sender.get("name"),
            sender_username=sender.get("username"),
            text=raw.get("message") or None,
            created_time=parse_graph_time(raw.get("created_time")),
        )
