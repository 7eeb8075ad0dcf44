"""
OpenAI-compatible classifier.

Sends one user-turn chat completion per prompt to an OpenAI-compatible
endpoint (NVIDIA-hosted by default). SDK retries are disabled; retry policy
lives in AnalysisClient. SDK exceptions are mapped to ClassifierError here.
"""

import logging
from typing import Dict, Optional

import openai
from openai import AsyncOpenAI

from ..errors import ClassifierError, ProviderErrorKind

logger = logging.getLogger(__name__)

# Providers sometimes report exhausted quota as a 400 with this wording
QUOTA_MARKERS = ("quota", "rate limit", "too many requests")


def classify_openai_error(error: Exception) -> ClassifierError:
    """Map an openai SDK exception to a ClassifierError."""
    message = str(error) or error.__class__.__name__
    status = getattr(error, "status_code", None)

    if isinstance(error, openai.RateLimitError):
        kind = ProviderErrorKind.RATE_LIMITED
    elif isinstance(error, (openai.AuthenticationError, openai.PermissionDeniedError)):
        kind = ProviderErrorKind.AUTH_FAILED
    elif isinstance(error, (openai.APITimeoutError, openai.APIConnectionError)):
        kind = ProviderErrorKind.TRANSIENT
    elif isinstance(error, openai.APIStatusError) and status is not None and status >= 500:
        kind = ProviderErrorKind.TRANSIENT
    elif any(marker in message.lower() for marker in QUOTA_MARKERS):
        kind = ProviderErrorKind.RATE_LIMITED
    else:
        kind = ProviderErrorKind.MALFORMED
    return ClassifierError(kind, message, status=status)


class OpenAIClassifier:
    """Classifier protocol implementation over the openai SDK.

    One AsyncOpenAI client is kept per API key, since the key pool rotates
    keys between calls.
    """

    def __init__(self, base_url: str, model: str, timeout: float = 60.0):
        self.base_url = base_url
        self.model = model
        self.timeout = timeout
        self._clients: Dict[str, AsyncOpenAI] = {}

    def _client_for(self, api_key: str) -> AsyncOpenAI:
        client = self._clients.get(api_key)
        if client is None:
            client = AsyncOpenAI(
                api_key=api_key,
                base_url=self.base_url,
                max_retries=0,
                timeout=self.timeout,
            )
            self._clients[api_key] = client
        return client

    async def complete(self, prompt: str, api_key: str) -> str:
        """Return the first choice's text ("" when the model said nothing).

        Raises:
            ClassifierError: For every provider failure, classified by kind
        """
        try:
            completion = await self._client_for(api_key).chat.completions.create(
                model=self.model,
                messages=[{"role": "user", "content": prompt}],
            )
        except openai.OpenAIError as e:
            raise classify_openai_error(e) from e

        extra = getattr(completion, "model_extra", None) or {}
        if "error" in extra:
            raise self._payload_error(extra.get("error"))

        if not completion.choices:
            raise ClassifierError(ProviderErrorKind.MALFORMED, "Classifier returned empty choices")

        content: Optional[str] = completion.choices[0].message.content
        return (content or "").strip()

    @staticmethod
    def _payload_error(value) -> ClassifierError:
        if isinstance(value, dict):
            message = value.get("message") or ""
        else:
            message = str(value) if value else ""
        if not message:
            # An empty error payload is how some providers throttle silently
            return ClassifierError(
                ProviderErrorKind.MALFORMED, "Empty error response from API", empty_error=True
            )
        if any(marker in message.lower() for marker in QUOTA_MARKERS):
            return ClassifierError(ProviderErrorKind.RATE_LIMITED, message)
        return ClassifierError(ProviderErrorKind.MALFORMED, message)

    async def aclose(self) -> None:
        for client in self._clients.values():
            await client.close()
        self._clients.clear()
