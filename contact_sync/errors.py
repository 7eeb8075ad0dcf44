"""
Error taxonomy.

External adapters translate raw provider failures into one of the
ProviderErrorKind values exactly once, at the adapter boundary. Everything
above the adapters branches on ``error.kind`` instead of inspecting messages.
"""

from enum import Enum
from typing import Optional


class ProviderErrorKind(str, Enum):
    RATE_LIMITED = "rate_limited"
    AUTH_FAILED = "auth_failed"
    TRANSIENT = "transient"
    CREDENTIAL_EXPIRED = "credential_expired"
    MALFORMED = "malformed"


class ContactSyncError(Exception):
    """Base class for errors raised by this package."""


class ClassifierError(ContactSyncError):
    """A classifier call failed.

    Attributes:
        kind: Classified failure kind
        status: HTTP status code when the provider returned one
        empty_error: True when the provider answered with an empty error
            payload, which in practice means it is silently throttling
    """

    def __init__(
        self,
        kind: ProviderErrorKind,
        message: str,
        status: Optional[int] = None,
        empty_error: bool = False,
    ):
        super().__init__(message)
        self.kind = kind
        self.status = status
        self.empty_error = empty_error


class ConversationSourceError(ContactSyncError):
    """A conversation source (messaging API) call failed.

    Attributes:
        kind: Classified failure kind
        code: Provider error code (e.g. Graph API code 190 for an expired token)
    """

    def __init__(self, kind: ProviderErrorKind, message: str, code: Optional[int] = None):
        super().__init__(message)
        self.kind = kind
        self.code = code

    @property
    def is_token_expired(self) -> bool:
        return self.kind == ProviderErrorKind.CREDENTIAL_EXPIRED


class CredentialDecryptionError(ContactSyncError):
    """A stored credential secret could not be decrypted."""


class JobNotFoundError(ContactSyncError):
    """Raised when a sync job ID does not exist."""


class PageNotFoundError(ContactSyncError):
    """Raised when a sync is requested for an unknown page."""
