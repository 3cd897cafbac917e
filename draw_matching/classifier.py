"""Deterministic classification of ranked candidates.

Pure thresholding, no I/O. Exactly one classification per call:

    AUTO_MATCH           top >= auto_match_score and a clear lead
    MULTIPLE_CANDIDATES  top >= mid_confidence_floor otherwise (AI decides)
    NO_CANDIDATES        nothing scored, or top below the floor (human decides)
"""

from typing import Sequence

from draw_matching.config import MatchingConfig, DEFAULT_MATCHING_CONFIG
from draw_matching.models import ClassificationResult, MatchCandidate, MatchClassification


# Score gaps are compared at this precision so 0.95 - 0.80 counts as 0.15
_GAP_PRECISION = 6


def classify_candidates(
    candidates: Sequence[MatchCandidate],
    config: MatchingConfig = DEFAULT_MATCHING_CONFIG,
) -> ClassificationResult:
    """Classify candidates ranked best-first by composite score.

    Args:
        candidates: Output of CandidateGenerator.generate (sorted)
        config: Thresholds

    Returns:
        ClassificationResult
    """
    if not candidates:
        return ClassificationResult(
            status=MatchClassification.NO_CANDIDATES,
            needs_review=True,
            reason="No draw lines scored above the candidate floor",
        )

    top = candidates[0]
    top_score = top.scores.composite
    runner_up = candidates[1] if len(candidates) > 1 else None
    gap = round(top_score - runner_up.scores.composite, _GAP_PRECISION) if runner_up else None

    if top_score >= config.auto_match_score and (gap is None or gap >= config.clear_winner_gap):
        reason = f"{top.budget_category} scored {top_score:.2f}"
        if gap is not None:
            reason += f", {gap:.2f} ahead of {runner_up.budget_category}"
        return ClassificationResult(
            status=MatchClassification.AUTO_MATCH,
            candidates=list(candidates),
            selected_draw_line_id=top.draw_line_id,
            confidence=top_score,
            reason=reason,
        )

    if top_score >= config.mid_confidence_floor:
        if top_score >= config.auto_match_score:
            reason = f"Top two candidates within {config.clear_winner_gap:.2f} ({gap:.2f})"
        else:
            reason = f"Top candidate scored {top_score:.2f}, below auto-match {config.auto_match_score:.2f}"
        return ClassificationResult(
            status=MatchClassification.MULTIPLE_CANDIDATES,
            candidates=list(candidates[: config.max_ai_candidates]),
            confidence=top_score,
            needs_ai=True,
            reason=reason,
        )

    return ClassificationResult(
        status=MatchClassification.NO_CANDIDATES,
        candidates=list(candidates),
        confidence=top_score,
        needs_review=True,
        reason=f"Best candidate scored {top_score:.2f}, below {config.mid_confidence_floor:.2f}",
    )
