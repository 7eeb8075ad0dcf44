"""
Rule-based lead scoring used when the classifier is unavailable.

Deterministic: the same transcript (and reference time) always gets the same
verdict. Confidence is capped low so downstream consumers can tell these
scores apart from model output.
"""

import logging
from datetime import datetime, timezone
from typing import List, Optional, Sequence, Tuple

from .analysis_client import AnalysisClient
from .models import AIContactAnalysis, LeadStatus, Stage, TranscriptMessage
from .stage_matcher import find_best_matching_stage

logger = logging.getLogger(__name__)

FALLBACK_CONFIDENCE = 30
BASE_SCORE = 15
STALE_AFTER_DAYS = 30

BUYING_SIGNALS = (
    "price", "how much", "cost", "buy", "order", "interested", "available",
    "deliver", "shipping", "payment", "quote", "book", "schedule", "discount",
)
CLOSED_SIGNALS = ("paid", "payment sent", "purchased", "confirmed my order", "deal")
REJECTION_SIGNALS = ("not interested", "no thanks", "too expensive", "unsubscribe", "stop messaging")


def _matched(text: str, signals: Sequence[str]) -> List[str]:
    return [s for s in signals if s in text]


def score_transcript(
    messages: Sequence[TranscriptMessage],
    stages: Optional[Sequence[Stage]] = None,
    last_activity: Optional[datetime] = None,
    now: Optional[datetime] = None,
) -> AIContactAnalysis:
    """Score a transcript from keyword signals, volume and recency."""
    now = now or datetime.now(timezone.utc)
    text = " ".join(m.text.lower() for m in messages)

    buying = _matched(text, BUYING_SIGNALS)
    closed = _matched(text, CLOSED_SIGNALS)
    rejected = _matched(text, REJECTION_SIGNALS)

    score = BASE_SCORE + min(20, 2 * len(messages)) + min(30, 10 * len(buying))
    reasons = [f"{len(messages)} message(s)"]
    if buying:
        reasons.append(f"buying signals: {', '.join(buying)}")

    stale = False
    if last_activity is not None:
        if last_activity.tzinfo is None:
            last_activity = last_activity.replace(tzinfo=timezone.utc)
        stale = (now - last_activity).days > STALE_AFTER_DAYS
        if stale:
            score -= 10
            reasons.append(f"no activity for over {STALE_AFTER_DAYS} days")

    if rejected:
        score = min(score, 15)
        status = LeadStatus.LOST
        reasons.append(f"rejection: {', '.join(rejected)}")
    elif closed:
        score = max(score, 85)
        status = LeadStatus.WON
        reasons.append(f"closing signals: {', '.join(closed)}")
    elif stale:
        status = LeadStatus.UNRESPONSIVE
    elif score > 60:
        status = LeadStatus.NEGOTIATING
    elif score > 30:
        status = LeadStatus.QUALIFIED
    elif len(messages) > 2:
        status = LeadStatus.CONTACTED
    else:
        status = LeadStatus.NEW

    score = max(0, min(100, score))

    recommended = ""
    if stages:
        ordered = sorted(stages, key=lambda s: s.order)
        match = find_best_matching_stage(ordered, score, status) or ordered[0]
        recommended = match.name

    last_text = messages[-1].text if messages else ""
    summary = f"{len(messages)} message(s) exchanged. Latest: {last_text[:160]}" if messages else ""

    return AIContactAnalysis(
        summary=summary,
        recommended_stage=recommended,
        lead_score=score,
        lead_status=status,
        confidence=FALLBACK_CONFIDENCE,
        reasoning="Rule-based score (" + "; ".join(reasons) + ")",
    )


async def analyze_with_fallback(
    client: AnalysisClient,
    messages: Sequence[TranscriptMessage],
    stages: Optional[List[Stage]] = None,
    last_activity: Optional[datetime] = None,
) -> Tuple[AIContactAnalysis, bool]:
    """Classifier verdict if available, otherwise the rule-based one.

    Returns:
        (analysis, used_fallback)
    """
    analysis = await client.analyze(messages, stages)
    if analysis is not None:
        return analysis, False
    return score_transcript(messages, stages, last_activity), True
