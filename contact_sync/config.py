"""
Runtime configuration.

All knobs come from the process environment (a project-level .env is loaded
first). Integer knobs are bounds-checked so a typo cannot launch a job with
thousands of concurrent API calls.
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

load_dotenv(Path(__file__).parent.parent / ".env")

DEFAULT_DATABASE_URL = "postgresql://localhost:5432/contact_sync"
DEFAULT_CLASSIFIER_BASE_URL = "https://integrate.api.nvidia.com/v1"
DEFAULT_CLASSIFIER_MODEL = "openai/gpt-oss-20b"


def _parse_env_int(name: str, default: int, min_val: int, max_val: int) -> int:
    """Parse an integer environment variable with bounds checking.

    Args:
        name: Environment variable name
        default: Default value if not set or invalid
        min_val: Minimum allowed value (inclusive)
        max_val: Maximum allowed value (inclusive)

    Returns:
        Parsed integer within bounds, or default if invalid
    """
    try:
        val = int(os.getenv(name, str(default)))
        if not (min_val <= val <= max_val):
            logger.warning(f"{name}={val} out of bounds [{min_val}, {max_val}], using {default}")
            return default
        return val
    except ValueError:
        logger.warning(f"{name} invalid, using {default}")
        return default


def _parse_env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    """Process-wide settings, built once by the service container."""

    database_url: str = DEFAULT_DATABASE_URL
    classifier_api_key: Optional[str] = None
    classifier_base_url: str = DEFAULT_CLASSIFIER_BASE_URL
    classifier_model: str = DEFAULT_CLASSIFIER_MODEL
    credential_encryption_key: Optional[str] = None

    # Job runner
    batch_size: int = 50
    fetch_concurrency: int = 50
    analysis_concurrency: int = 50
    message_pages: int = 20
    fetch_timeout_seconds: int = 30
    cancel_poll_every: int = 25
    max_job_errors: int = 200
    retry_attempts: int = 3
    retry_initial_delay_ms: int = 1000

    # Caches
    message_cache_ttl_seconds: int = 3600
    message_cache_max_entries: int = 10000
    pipeline_cache_ttl_seconds: int = 300
    key_pool_cache_ttl_seconds: int = 300
    key_pool_debounce_seconds: int = 5

    # Stage assignment
    downgrade_protection: bool = True
    downgrade_min_score_margin: int = 0

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=os.getenv("DATABASE_URL", DEFAULT_DATABASE_URL),
            classifier_api_key=os.getenv("CLASSIFIER_API_KEY") or None,
            classifier_base_url=os.getenv("CLASSIFIER_BASE_URL", DEFAULT_CLASSIFIER_BASE_URL),
            classifier_model=os.getenv("CLASSIFIER_MODEL", DEFAULT_CLASSIFIER_MODEL),
            credential_encryption_key=os.getenv("CREDENTIAL_ENCRYPTION_KEY") or None,
            batch_size=_parse_env_int("SYNC_BATCH_SIZE", 50, 5, 500),
            fetch_concurrency=_parse_env_int("SYNC_FETCH_CONCURRENCY", 50, 1, 200),
            analysis_concurrency=_parse_env_int("SYNC_ANALYSIS_CONCURRENCY", 50, 1, 200),
            message_pages=_parse_env_int("SYNC_MESSAGE_PAGES", 20, 1, 100),
            fetch_timeout_seconds=_parse_env_int("SYNC_FETCH_TIMEOUT_SECONDS", 30, 1, 600),
            cancel_poll_every=_parse_env_int("SYNC_CANCEL_POLL_EVERY", 25, 1, 1000),
            max_job_errors=_parse_env_int("SYNC_MAX_JOB_ERRORS", 200, 10, 10000),
            retry_attempts=_parse_env_int("SYNC_RETRY_ATTEMPTS", 3, 1, 10),
            retry_initial_delay_ms=_parse_env_int("SYNC_RETRY_INITIAL_DELAY_MS", 1000, 0, 60000),
            message_cache_ttl_seconds=_parse_env_int("MESSAGE_CACHE_TTL_SECONDS", 3600, 1, 86400),
            message_cache_max_entries=_parse_env_int("MESSAGE_CACHE_MAX_ENTRIES", 10000, 1, 1000000),
            pipeline_cache_ttl_seconds=_parse_env_int("PIPELINE_CACHE_TTL_SECONDS", 300, 1, 86400),
            key_pool_cache_ttl_seconds=_parse_env_int("KEY_POOL_CACHE_TTL_SECONDS", 300, 1, 86400),
            key_pool_debounce_seconds=_parse_env_int("KEY_POOL_DEBOUNCE_SECONDS", 5, 0, 600),
            downgrade_protection=_parse_env_bool("DOWNGRADE_PROTECTION", True),
            downgrade_min_score_margin=_parse_env_int("DOWNGRADE_MIN_SCORE_MARGIN", 0, 0, 100),
        )
