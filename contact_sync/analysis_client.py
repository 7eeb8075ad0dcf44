"""
AI transcript analysis.

Builds the classification prompt, calls the classifier through the key pool
with retry, backoff and key rotation, and extracts the structured verdict
from the model's free-text reply. Every failure path ends in ``None`` so the
caller can fall back to rule-based scoring.
"""

import asyncio
import json
import logging
import random
import re
from typing import Any, Dict, List, Optional, Sequence

from .errors import ClassifierError, ProviderErrorKind
from .interfaces import Classifier
from .key_pool import RetryingKeyPool
from .models import AIContactAnalysis, KeyLease, LeadStatus, Stage, TranscriptMessage

logger = logging.getLogger(__name__)

# Score used when no stage catalog is available and only a summary is produced
NEUTRAL_LEAD_SCORE = 50

_JSON_OBJECT_RE = re.compile(r"\{[\s\S]*\}")


STAGE_PROMPT_TEMPLATE = """You are reviewing a customer conversation from a business inbox. Place the customer in the sales/support pipeline stage that best matches where they are today.

Pipeline stages:
{stages}

Conversation (oldest first):
{conversation}

Decide:
1. Which stage fits the customer's current position
2. A lead score from 0 to 100 reflecting intent, engagement and commitment. Use the stage score ranges as a guide.
3. A lead status: NEW, CONTACTED, QUALIFIED, PROPOSAL_SENT, NEGOTIATING, WON, LOST or UNRESPONSIVE
4. Your confidence in this assessment from 0 to 100

Scoring guide:
- 0-30: cold, first contact, browsing
- 31-60: warm, asking questions, early qualification
- 61-80: hot, discussing specifics such as budget or timeline
- 81-100: ready to close or already closed

If the customer has agreed to buy or paid, the status is WON (score 85-100).
If the customer has declined, the status is LOST (score 0-20).

Reply with JSON only:
{{
  "summary": "3-5 sentence summary of the conversation",
  "recommendedStage": "exact stage name from the list",
  "leadScore": 0,
  "leadStatus": "NEW",
  "confidence": 0,
  "reasoning": "short explanation of the stage and score"
}}"""


SUMMARY_PROMPT_TEMPLATE = """Summarize this customer conversation in 3-5 sentences. Cover what the customer wants, any commitments made, and the current state of the conversation.

Conversation (oldest first):
{conversation}

Summary:"""


def format_transcript(messages: Sequence[TranscriptMessage]) -> str:
    return "\n".join(f"{m.sender}: {m.text}" for m in messages)


def format_stage_catalog(stages: Sequence[Stage]) -> str:
    lines = []
    for i, stage in enumerate(stages, start=1):
        line = f"{i}. {stage.name} ({stage.type.value}) [Score: {stage.lead_score_min}-{stage.lead_score_max}]"
        if stage.description:
            line += f": {stage.description}"
        lines.append(line)
    return "\n".join(lines)


def build_stage_prompt(messages: Sequence[TranscriptMessage], stages: Sequence[Stage]) -> str:
    ordered = sorted(stages, key=lambda s: s.order)
    return STAGE_PROMPT_TEMPLATE.format(
        stages=format_stage_catalog(ordered),
        conversation=format_transcript(messages),
    )


def build_summary_prompt(messages: Sequence[TranscriptMessage]) -> str:
    return SUMMARY_PROMPT_TEMPLATE.format(conversation=format_transcript(messages))


def extract_json_object(text: Optional[str]) -> Optional[Dict[str, Any]]:
    """Best-effort extraction of a JSON object from free-form model output.

    Takes the span from the first ``{`` to the last ``}`` (so markdown fences
    and chatter around the object are ignored) and parses it. Returns None
    when there is no such span, it is not valid JSON, or it is not an object.
    """
    if not text:
        return None
    match = _JSON_OBJECT_RE.search(text)
    if not match:
        return None
    try:
        parsed = json.loads(match.group(0))
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


def _clamp_int(value: Any, low: int = 0, high: int = 100) -> Optional[int]:
    try:
        number = int(round(float(value)))
    except (TypeError, ValueError):
        return None
    return max(low, min(high, number))


def parse_analysis(payload: Dict[str, Any]) -> Optional[AIContactAnalysis]:
    """Coerce an extracted payload into an AIContactAnalysis.

    The lead score is required; other fields degrade to safe defaults.
    """
    lead_score = _clamp_int(payload.get("leadScore"))
    if lead_score is None:
        return None

    raw_status = str(payload.get("leadStatus") or "").strip().upper()
    try:
        lead_status = LeadStatus(raw_status)
    except ValueError:
        lead_status = LeadStatus.NEW

    return AIContactAnalysis(
        summary=str(payload.get("summary") or ""),
        recommended_stage=str(payload.get("recommendedStage") or ""),
        lead_score=lead_score,
        lead_status=lead_status,
        confidence=_clamp_int(payload.get("confidence")) or 0,
        reasoning=str(payload.get("reasoning") or ""),
    )


class AnalysisClient:
    """Score transcripts with the remote classifier.

    Failure handling:
    - MALFORMED / TRANSIENT: exponential backoff with jitter, ``MAX_ATTEMPTS``
      tries on the same key (base delay doubled for empty error payloads).
      Exhausted MALFORMED marks the key rate-limited; exhausted TRANSIENT
      records a failure.
    - RATE_LIMITED: fixed-delay retries on the same key, up to ``MAX_ATTEMPTS``
      tries; if the key is still throttled, mark it rate-limited and rotate.
    - AUTH_FAILED: disable the key, rotate.
    Rotation happens at most ``MAX_KEY_ROTATIONS`` times per call.
    """

    MAX_ATTEMPTS = 3
    MAX_KEY_ROTATIONS = 2
    RETRY_DELAY_BASE = 6.0  # seconds
    RATE_LIMIT_RETRY_DELAY = 6.0  # seconds
    MAX_JITTER = 1.0  # seconds

    def __init__(
        self,
        classifier: Classifier,
        key_pool: RetryingKeyPool,
        max_attempts: Optional[int] = None,
        max_key_rotations: Optional[int] = None,
        retry_delay_base: Optional[float] = None,
        rate_limit_delay: Optional[float] = None,
    ):
        self.classifier = classifier
        self.key_pool = key_pool
        self.max_attempts = max_attempts if max_attempts is not None else self.MAX_ATTEMPTS
        self.max_key_rotations = (
            max_key_rotations if max_key_rotations is not None else self.MAX_KEY_ROTATIONS
        )
        self.retry_delay_base = retry_delay_base if retry_delay_base is not None else self.RETRY_DELAY_BASE
        self.rate_limit_delay = rate_limit_delay if rate_limit_delay is not None else self.RATE_LIMIT_RETRY_DELAY

    async def analyze(
        self,
        messages: Sequence[TranscriptMessage],
        stages: Optional[List[Stage]] = None,
    ) -> Optional[AIContactAnalysis]:
        """Analyze a transcript.

        With a stage catalog, returns the full verdict. Without one, returns
        a summary-only verdict with a neutral lead score. Returns None on any
        unrecoverable failure.
        """
        if not messages:
            return None

        if stages:
            text = await self._complete(build_stage_prompt(messages, stages))
            payload = extract_json_object(text)
            if payload is None:
                if text is not None:
                    logger.warning(f"No JSON object in classifier reply: {text[:200]!r}")
                return None
            analysis = parse_analysis(payload)
            if analysis is None:
                logger.warning(f"Classifier reply missing leadScore: {payload}")
            return analysis

        text = await self._complete(build_summary_prompt(messages))
        if not text or not text.strip():
            return None
        return AIContactAnalysis(
            summary=text.strip(),
            lead_score=NEUTRAL_LEAD_SCORE,
            lead_status=LeadStatus.NEW,
            confidence=0,
            reasoning="Summary only; no pipeline stages configured",
        )

    async def _complete(self, prompt: str) -> Optional[str]:
        for rotation in range(self.max_key_rotations + 1):
            lease = await self.key_pool.get_next()
            if lease is None:
                logger.error("No classifier API key available, skipping analysis")
                return None

            try:
                text = await self._complete_with_backoff(lease, prompt)
            except ClassifierError as e:
                if e.kind == ProviderErrorKind.RATE_LIMITED:
                    logger.warning(
                        f"Key {lease.key_id or 'override'} still rate limited after {self.max_attempts} attempts, "
                        f"rotating (rotation {rotation + 1}/{self.max_key_rotations + 1})"
                    )
                    self.key_pool.mark_rate_limited(lease.key_id)
                    continue
                if e.kind == ProviderErrorKind.AUTH_FAILED:
                    logger.error(f"Key {lease.key_id or 'override'} rejected ({e.status}), rotating")
                    self.key_pool.mark_invalid(lease.key_id, str(e))
                    continue
                return None

            self.key_pool.record_success(lease.key_id)
            if not text:
                logger.warning("Classifier returned empty content")
                return None
            return text

        logger.error(f"Classifier unavailable after {self.max_key_rotations + 1} key rotation(s)")
        return None

    async def _complete_with_backoff(self, lease: KeyLease, prompt: str) -> str:
        """Call the classifier, retrying RATE_LIMITED/MALFORMED/TRANSIENT errors on the same key.

        A 429 is often momentary, so the key is only given up on once every
        attempt was throttled.

        Raises:
            ClassifierError: AUTH_FAILED immediately, others once attempts are
                exhausted
        """
        retryable = (ProviderErrorKind.MALFORMED, ProviderErrorKind.TRANSIENT)
        for attempt in range(self.max_attempts):
            try:
                return await self.classifier.complete(prompt, lease.secret)
            except ClassifierError as e:
                if e.kind == ProviderErrorKind.RATE_LIMITED:
                    if attempt + 1 >= self.max_attempts:
                        raise
                    logger.warning(
                        f"Key {lease.key_id or 'override'} rate limited, retrying in "
                        f"{self.rate_limit_delay:.0f}s (attempt {attempt + 1}/{self.max_attempts})"
                    )
                    await asyncio.sleep(self.rate_limit_delay)
                    continue
                if e.kind not in retryable:
                    raise
                if attempt + 1 >= self.max_attempts:
                    logger.error(f"Classifier failed after {self.max_attempts} attempts: {e}")
                    if e.kind == ProviderErrorKind.MALFORMED:
                        self.key_pool.mark_rate_limited(lease.key_id)
                    else:
                        self.key_pool.record_failure(lease.key_id)
                    raise
                base_delay = self.retry_delay_base * (2 if e.empty_error else 1)
                delay = base_delay * (2 ** attempt) + random.uniform(0, self.MAX_JITTER)
                logger.warning(
                    f"Classifier error ({e.kind.value}): {e}, retrying in {delay:.1f}s "
                    f"(attempt {attempt + 1}/{self.max_attempts})"
                )
                await asyncio.sleep(delay)

        raise RuntimeError("Unexpected retry loop exit")
