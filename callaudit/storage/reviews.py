"""Human review overlay on persisted step results.

Reviews never touch the machine output in place without a trail: each call
appends one entry holding the values it replaced (``previous``) and the
values it wrote (``override``).
"""

import logging
from copy import deepcopy
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from callaudit.engine.scorer import score_audit
from callaudit.models import Audit, AuditStepResult, AuditStepReview
from callaudit.schemas.audit import STATUS_COMPLETED, ComplianceVerdict, StepResultOut
from callaudit.schemas.review import ControlPointReviewRequest, ControlPointSummary, StepReviewRequest
from callaudit.storage.repositories import (
    apply_verdict,
    get_audit_by_id,
    list_step_results,
    rubric_from_audit,
    to_step_result_out,
)

logger = logging.getLogger(__name__)

KIND_STEP = "step"
KIND_CONTROL_POINT = "control_point"

STEP_REVIEW_FIELDS = ("conforme", "traite", "score", "niveau_conformite")
CONTROL_POINT_REVIEW_FIELDS = ("statut", "commentaire")


def _merge_override(previous: dict[str, Any], requested: dict[str, Any]) -> dict[str, Any]:
    """Unset requested fields fall back to the previous value."""
    return {k: requested[k] if requested.get(k) is not None else v for k, v in previous.items()}


async def _locked_step(db: AsyncSession, audit_id: str, step_position: int) -> AuditStepResult | None:
    result = await db.execute(
        select(AuditStepResult)
        .where(
            AuditStepResult.audit_id == audit_id,
            AuditStepResult.step_position == step_position,
        )
        .with_for_update()
    )
    return result.scalar_one_or_none()


async def _next_sequence(db: AsyncSession, audit_id: str, step_position: int) -> int:
    count = await db.scalar(
        select(func.count(AuditStepReview.review_id)).where(
            AuditStepReview.audit_id == audit_id,
            AuditStepReview.step_position == step_position,
        )
    )
    return (count or 0) + 1


async def _append_review(
    db: AsyncSession,
    row: AuditStepResult,
    kind: str,
    previous: dict[str, Any],
    override: dict[str, Any],
    reviewer: str | None,
    reason: str | None,
    control_point_index: int | None = None,
    point: str | None = None,
) -> AuditStepReview:
    review = AuditStepReview(
        review_id=str(uuid4()),
        audit_id=row.audit_id,
        step_position=row.step_position,
        sequence=await _next_sequence(db, row.audit_id, row.step_position),
        kind=kind,
        control_point_index=control_point_index,
        point=point,
        reviewed_at=datetime.now(timezone.utc),
        reviewer=reviewer,
        reason=reason,
        previous=previous,
        override=override,
    )
    db.add(review)
    return review


async def list_step_reviews(db: AsyncSession, audit_id: str, step_position: int) -> list[AuditStepReview]:
    result = await db.execute(
        select(AuditStepReview)
        .where(
            AuditStepReview.audit_id == audit_id,
            AuditStepReview.step_position == step_position,
        )
        .order_by(AuditStepReview.sequence)
    )
    return list(result.scalars().all())


async def recompute_compliance(db: AsyncSession, audit: Audit) -> ComplianceVerdict:
    """Re-score a completed audit from its stored step rows and rubric snapshot."""
    rows = await list_step_results(db, audit.audit_id)
    verdict = score_audit(rows, rubric_from_audit(audit))
    apply_verdict(audit, verdict)
    await db.flush()
    logger.info("Audit %s re-scored: %.2f%% %s", audit.audit_id, verdict.score, verdict.niveau)
    return verdict


async def review_step(
    db: AsyncSession,
    audit_id: str,
    step_position: int,
    request: StepReviewRequest,
) -> StepResultOut | None:
    """Override a step verdict; None when the audit or step does not exist."""
    row = await _locked_step(db, audit_id, step_position)
    if row is None:
        return None

    previous = {field: getattr(row, field) for field in STEP_REVIEW_FIELDS}
    override = _merge_override(previous, request.model_dump(include=set(STEP_REVIEW_FIELDS)))
    await _append_review(db, row, KIND_STEP, previous, override, request.reviewer, request.reason)

    for field, value in override.items():
        setattr(row, field, value)
    row.updated_at = datetime.now(timezone.utc)
    await db.flush()
    logger.info("Audit %s step %d reviewed by %s", audit_id, step_position, request.reviewer or "?")

    audit = await get_audit_by_id(db, audit_id)
    if audit is not None and audit.status == STATUS_COMPLETED:
        await recompute_compliance(db, audit)

    return to_step_result_out(row, await list_step_reviews(db, audit_id, step_position))


async def review_control_point(
    db: AsyncSession,
    audit_id: str,
    step_position: int,
    control_point_index: int,
    request: ControlPointReviewRequest,
) -> StepResultOut | None:
    """Override one control point (1-based index).

    None when the step is missing, has no control points, or the index is
    out of range; nothing is written in that case.
    """
    row = await _locked_step(db, audit_id, step_position)
    if row is None:
        return None
    points = row.control_points
    if not points or not 1 <= control_point_index <= len(points):
        logger.info(
            "Audit %s step %d: control point %d not available (%d present)",
            audit_id,
            step_position,
            control_point_index,
            len(points),
        )
        return None

    current = points[control_point_index - 1]
    previous = {field: current.get(field) for field in CONTROL_POINT_REVIEW_FIELDS}
    override = _merge_override(previous, request.model_dump(include=set(CONTROL_POINT_REVIEW_FIELDS)))
    await _append_review(
        db,
        row,
        KIND_CONTROL_POINT,
        previous,
        override,
        request.reviewer,
        request.reason,
        control_point_index=control_point_index,
        point=current.get("point"),
    )

    # JSONB columns are not mutation-tracked; assign a fresh dict
    raw = deepcopy(row.raw_result)
    raw["points_controle"][control_point_index - 1].update(override)
    row.raw_result = raw
    row.updated_at = datetime.now(timezone.utc)
    await db.flush()
    logger.info(
        "Audit %s step %d control point %d reviewed by %s",
        audit_id,
        step_position,
        control_point_index,
        request.reviewer or "?",
    )
    return to_step_result_out(row, await list_step_reviews(db, audit_id, step_position))


async def get_control_point_summary(
    db: AsyncSession,
    audit_id: str,
    step_position: int,
    control_point_index: int,
) -> ControlPointSummary | None:
    result = await db.execute(
        select(AuditStepResult).where(
            AuditStepResult.audit_id == audit_id,
            AuditStepResult.step_position == step_position,
        )
    )
    row = result.scalar_one_or_none()
    if row is None:
        return None
    points = row.control_points
    if not 1 <= control_point_index <= len(points):
        return None
    cp = points[control_point_index - 1]
    return ControlPointSummary(
        audit_id=str(audit_id),
        step_position=step_position,
        control_point_index=control_point_index,
        point=str(cp.get("point") or ""),
        statut=str(cp.get("statut") or ""),
        commentaire=str(cp.get("commentaire") or ""),
    )
