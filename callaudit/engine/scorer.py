"""Compliance scorer - weighted score, critical-step veto and tier label.

Pure function of the step results and the rubric snapshot; the order of
the results does not matter.
"""

from collections.abc import Iterable
from typing import Protocol

from callaudit.config import settings
from callaudit.schemas.audit import (
    NIVEAU_ACCEPTABLE,
    NIVEAU_BON,
    NIVEAU_EXCELLENT,
    NIVEAU_INSUFFISANT,
    NIVEAU_REJET,
    ComplianceThresholds,
    ComplianceVerdict,
)
from callaudit.schemas.oracle import COMPLIANT
from callaudit.schemas.rubric import Rubric


class ScoredStep(Protocol):
    """Anything carrying a step verdict (run results, persisted rows)."""

    step_position: int
    score: int | None
    conforme: str | None


def thresholds_from_settings() -> ComplianceThresholds:
    return ComplianceThresholds(
        excellent=settings.threshold_excellent,
        bon=settings.threshold_bon,
        acceptable=settings.threshold_acceptable,
        inclusive=settings.thresholds_inclusive,
    )


def classify(score_percent: float, critical_passed: int, critical_total: int, thresholds: ComplianceThresholds) -> str:
    """Tier label; any failed critical step vetoes to REJET."""
    if critical_passed < critical_total:
        return NIVEAU_REJET

    def meets(bound: float) -> bool:
        return score_percent >= bound if thresholds.inclusive else score_percent > bound

    if meets(thresholds.excellent):
        return NIVEAU_EXCELLENT
    if meets(thresholds.bon):
        return NIVEAU_BON
    if meets(thresholds.acceptable):
        return NIVEAU_ACCEPTABLE
    return NIVEAU_INSUFFISANT


def score_audit(
    results: Iterable[ScoredStep],
    rubric: Rubric,
    thresholds: ComplianceThresholds | None = None,
) -> ComplianceVerdict:
    """Reduce step results to a single verdict.

    A step's contribution is capped at its rubric weight; a result whose
    position has no rubric weight counts its raw score.
    """
    thresholds = thresholds or thresholds_from_settings()
    weights = {s.position: s.weight for s in rubric.steps}
    total_weight = float(sum(weights.values()))

    earned_weight = 0.0
    compliant_positions: set[int] = set()
    for r in results:
        if r.conforme == COMPLIANT:
            compliant_positions.add(r.step_position)
        if r.score is None:
            continue
        effective_max = weights.get(r.step_position, r.score)
        earned_weight += min(r.score, effective_max)

    score_percent = 100.0 * earned_weight / total_weight if total_weight > 0 else 0.0

    critical_positions = [s.position for s in rubric.steps if s.is_critical]
    critical_total = len(critical_positions)
    critical_passed = sum(1 for pos in critical_positions if pos in compliant_positions)

    return ComplianceVerdict(
        score=round(score_percent, 2),
        niveau=classify(score_percent, critical_passed, critical_total, thresholds),
        points_critiques=f"{critical_passed}/{critical_total}",
        critical_passed=critical_passed,
        critical_total=critical_total,
        earned_weight=earned_weight,
        total_weight=total_weight,
    )
