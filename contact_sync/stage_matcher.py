"""
Stage selection and downgrade protection.

Pure functions: given a pipeline's stages and an analysis verdict, decide
which stage a contact belongs in, and whether moving it there would be a
regression that must be refused.
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from .models import (
    DEFAULT_SCORE_MAX,
    DEFAULT_SCORE_MIN,
    AIContactAnalysis,
    LeadStatus,
    Stage,
    StageType,
)

logger = logging.getLogger(__name__)

# Which stage type a lead status naturally lives in
STATUS_STAGE_TYPES: Dict[LeadStatus, StageType] = {
    LeadStatus.NEW: StageType.LEAD,
    LeadStatus.CONTACTED: StageType.LEAD,
    LeadStatus.UNRESPONSIVE: StageType.LEAD,
    LeadStatus.QUALIFIED: StageType.IN_PROGRESS,
    LeadStatus.PROPOSAL_SENT: StageType.IN_PROGRESS,
    LeadStatus.NEGOTIATING: StageType.IN_PROGRESS,
    LeadStatus.WON: StageType.WON,
    LeadStatus.LOST: StageType.LOST,
}


@dataclass(frozen=True)
class DowngradePolicy:
    """Controls when a contact may move to an earlier stage.

    A move to a lower-order stage is refused unless the new score falls
    strictly below the proposed stage's minimum by more than
    ``min_score_margin`` points.
    """

    enabled: bool = True
    min_score_margin: int = 0


def find_best_matching_stage(
    stages: Sequence[Stage],
    lead_score: int,
    lead_status: Optional[LeadStatus] = None,
) -> Optional[Stage]:
    """Pick the stage whose score range contains ``lead_score``.

    Ties between overlapping ranges go to the stage whose type matches the
    lead status, then to the lowest order. Returns None when no range
    contains the score.
    """
    candidates = [s for s in stages if s.lead_score_min <= lead_score <= s.lead_score_max]
    if not candidates:
        return None

    wanted_type = STATUS_STAGE_TYPES.get(lead_status) if lead_status else None

    def rank(stage: Stage) -> Tuple[int, int]:
        type_miss = 0 if wanted_type is not None and stage.type == wanted_type else 1
        return (type_miss, stage.order)

    return min(candidates, key=rank)


def resolve_stage(stages: Sequence[Stage], analysis: AIContactAnalysis) -> Optional[Stage]:
    """Score range first, then the model's recommended stage name, then the first stage."""
    ordered = sorted(stages, key=lambda s: s.order)
    if not ordered:
        return None

    stage = find_best_matching_stage(ordered, analysis.lead_score, analysis.lead_status)
    if stage is not None:
        return stage

    recommended = analysis.recommended_stage.strip().lower()
    if recommended:
        for candidate in ordered:
            if candidate.name.lower() == recommended:
                logger.debug(f"Using recommended stage by name: {candidate.name}")
                return candidate

    logger.debug(f"No stage matched score {analysis.lead_score}, using first stage {ordered[0].name}")
    return ordered[0]


def should_prevent_downgrade(
    current_order: int,
    proposed_order: int,
    new_score: int,
    proposed_min: int,
    policy: DowngradePolicy = DowngradePolicy(),
) -> bool:
    """True if moving from ``current_order`` to ``proposed_order`` must be skipped.

    Forward and same-stage moves are always allowed. A backward move is
    allowed only when the new score is decisively low for the proposed stage:
    ``new_score < proposed_min - policy.min_score_margin``.
    """
    if not policy.enabled:
        return False
    if proposed_order >= current_order:
        return False
    decisively_lower = new_score < proposed_min - policy.min_score_margin
    return not decisively_lower


def generate_score_ranges(stages: Sequence[Stage]) -> Dict[str, Tuple[int, int]]:
    """Split 0-100 into contiguous, near-equal bands, one per stage in order.

    Earlier bands absorb the remainder, so five stages get
    0-20, 21-40, 41-60, 61-80, 81-100.
    """
    ordered = sorted(stages, key=lambda s: s.order)
    if not ordered:
        return {}

    span = DEFAULT_SCORE_MAX - DEFAULT_SCORE_MIN + 1
    base, remainder = divmod(span, len(ordered))
    ranges: Dict[str, Tuple[int, int]] = {}
    low = DEFAULT_SCORE_MIN
    for i, stage in enumerate(ordered):
        width = base + (1 if i < remainder else 0)
        high = low + width - 1
        ranges[stage.id] = (low, high)
        low = high + 1
    return ranges


def apply_score_ranges(stages: List[Stage], ranges: Dict[str, Tuple[int, int]]) -> List[Stage]:
    return [
        s.model_copy(update={"lead_score_min": ranges[s.id][0], "lead_score_max": ranges[s.id][1]})
        if s.id in ranges else s
        for s in stages
    ]
