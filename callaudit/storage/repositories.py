"""Repository functions for rubrics, audits and step results.

Every function works inside the caller's session/transaction and flushes;
the caller owns commit/rollback.
"""

import logging
from collections.abc import Sequence
from datetime import datetime, timedelta, timezone
from uuid import uuid4

from sqlalchemy import case, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from callaudit.errors import InvalidAuditStateError
from callaudit.models import Audit, AuditStepResult, AuditStepReview, RubricRecord
from callaudit.schemas.audit import (
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_RUNNING,
    AuditDetail,
    CaseAuditStatistics,
    CaseInfo,
    ComplianceVerdict,
    ReviewEntryOut,
    StepResultOut,
)
from callaudit.schemas.oracle import RunStatistics, StepRunResult
from callaudit.schemas.rubric import Rubric, StepDefinition

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Rubrics
# ---------------------------------------------------------------------------


async def get_rubric_snapshot(db: AsyncSession, rubric_id: str) -> Rubric | None:
    """Load a stored rubric as an immutable snapshot."""
    result = await db.execute(select(RubricRecord).where(RubricRecord.rubric_id == rubric_id))
    record = result.scalar_one_or_none()
    if record is None:
        return None
    return Rubric(
        id=str(record.rubric_id),
        name=record.name,
        description=record.description,
        steps=tuple(
            StepDefinition(
                position=s.position,
                name=s.name,
                description=s.description or "",
                weight=s.weight,
                is_critical=s.is_critical,
                severity=s.severity,
                requires_product_info=s.requires_product_info,
                control_points=tuple(s.control_points or ()),
                keywords=tuple(s.keywords or ()),
            )
            for s in record.steps
        ),
    )


def rubric_from_audit(audit: Audit) -> Rubric:
    """Rubric snapshot the audit was run with."""
    return Rubric.model_validate(audit.rubric_snapshot)


# ---------------------------------------------------------------------------
# Audit lifecycle
# ---------------------------------------------------------------------------


async def get_audit_by_id(db: AsyncSession, audit_id: str, for_update: bool = False) -> Audit | None:
    stmt = select(Audit).where(Audit.audit_id == audit_id)
    if for_update:
        stmt = stmt.with_for_update()
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def get_audit_by_run_key(db: AsyncSession, run_key: str) -> Audit | None:
    result = await db.execute(select(Audit).where(Audit.run_key == run_key))
    return result.scalar_one_or_none()


async def create_pending_audit(
    db: AsyncSession,
    case: CaseInfo,
    rubric: Rubric,
    run_key: str | None = None,
) -> Audit:
    """Create the ``running`` audit row for a run attempt.

    With a ``run_key``, a repeated call returns the row created by the first one.
    """
    if run_key:
        existing = await get_audit_by_run_key(db, run_key)
        if existing is not None:
            logger.info("Audit %s already exists for run key %s", existing.audit_id, run_key)
            return existing

    audit = Audit(
        audit_id=str(uuid4()),
        case_ref=case.case_ref,
        rubric_ref=rubric.id,
        rubric_name=rubric.name,
        rubric_snapshot=rubric.model_dump(mode="json"),
        case_name=case.name,
        case_group=case.group,
        run_key=run_key,
        status=STATUS_RUNNING,
        is_latest=False,
        started_at=_now(),
    )
    db.add(audit)
    await db.flush()
    logger.info("Audit %s running (case=%s, rubric=%s)", audit.audit_id, case.case_ref, rubric.id)
    return audit


async def get_step_result(db: AsyncSession, audit_id: str, step_position: int) -> AuditStepResult | None:
    result = await db.execute(
        select(AuditStepResult).where(
            AuditStepResult.audit_id == audit_id,
            AuditStepResult.step_position == step_position,
        )
    )
    return result.scalar_one_or_none()


async def upsert_step_result(db: AsyncSession, audit: Audit, step_result: StepRunResult) -> AuditStepResult:
    """Create or refresh the row keyed by (audit, step_position); last write wins."""
    position = step_result.step_position
    rubric_step = rubric_from_audit(audit).step(position)
    if rubric_step is None:
        logger.warning("Audit %s: step %d is not part of the rubric snapshot", audit.audit_id, position)

    row = await get_step_result(db, audit.audit_id, position)
    if row is None:
        row = AuditStepResult(
            step_result_id=str(uuid4()),
            audit_id=audit.audit_id,
            step_position=position,
        )
        db.add(row)

    oracle_result = step_result.result
    row.step_name = step_result.step.name
    row.weight = rubric_step.weight if rubric_step else step_result.step.weight
    row.is_critical = rubric_step.is_critical if rubric_step else False
    row.severity = step_result.step.severity
    row.in_rubric = rubric_step is not None
    row.traite = oracle_result.traite if oracle_result else None
    row.conforme = oracle_result.conforme if oracle_result else None
    row.score = oracle_result.score if oracle_result else None
    row.niveau_conformite = oracle_result.niveau_conformite if oracle_result else None
    row.error = step_result.error
    row.total_citations = oracle_result.total_citations if oracle_result else 0
    row.total_tokens = oracle_result.token_usage.total_tokens if oracle_result else 0
    row.raw_result = step_result.raw_result()
    row.updated_at = _now()
    await db.flush()
    return row


async def upsert_step_results(
    db: AsyncSession, audit: Audit, step_results: Sequence[StepRunResult]
) -> list[AuditStepResult]:
    return [await upsert_step_result(db, audit, r) for r in step_results]


async def list_step_results(db: AsyncSession, audit_id: str) -> list[AuditStepResult]:
    result = await db.execute(
        select(AuditStepResult)
        .where(AuditStepResult.audit_id == audit_id)
        .order_by(AuditStepResult.step_position)
    )
    return list(result.scalars().all())


async def _demote_latest(db: AsyncSession, case_ref: str, rubric_ref: str, keep_audit_id: str | None = None) -> None:
    stmt = update(Audit).where(
        Audit.case_ref == case_ref,
        Audit.rubric_ref == rubric_ref,
        Audit.is_latest.is_(True),
    )
    if keep_audit_id is not None:
        stmt = stmt.where(Audit.audit_id != keep_audit_id)
    await db.execute(stmt.values(is_latest=False))


async def finalize_audit(
    db: AsyncSession,
    audit_id: str,
    verdict: ComplianceVerdict,
    statistics: RunStatistics,
    *,
    duration_ms: int | None = None,
    recordings_count: int | None = None,
    timeline_chunks: int | None = None,
    timeline_hash: str | None = None,
) -> Audit:
    """Write the verdict, complete the run and make it the latest for its pair.

    Demotion of the previous latest happens in the same transaction.
    """
    audit = await get_audit_by_id(db, audit_id, for_update=True)
    if audit is None:
        raise InvalidAuditStateError(audit_id, "missing", STATUS_RUNNING)
    if audit.status != STATUS_RUNNING:
        raise InvalidAuditStateError(audit_id, audit.status, STATUS_RUNNING)

    await _demote_latest(db, audit.case_ref, audit.rubric_ref, keep_audit_id=audit.audit_id)

    audit.status = STATUS_COMPLETED
    apply_verdict(audit, verdict)
    audit.successful_steps = statistics.successful
    audit.failed_steps = statistics.failed
    audit.total_tokens = statistics.total_tokens
    audit.duration_ms = duration_ms if duration_ms is not None else int(statistics.total_time_seconds * 1000)
    audit.recordings_count = recordings_count
    audit.timeline_chunks = timeline_chunks
    audit.timeline_hash = timeline_hash
    audit.completed_at = _now()
    audit.error_message = None
    audit.is_latest = audit.deleted_at is None
    await db.flush()
    logger.info("Audit %s completed: %.2f%% %s", audit.audit_id, verdict.score, verdict.niveau)
    return audit


async def mark_failed(db: AsyncSession, audit_id: str, message: str) -> Audit | None:
    """Terminal failure; a completed audit is never overwritten."""
    audit = await get_audit_by_id(db, audit_id, for_update=True)
    if audit is None:
        return None
    if audit.status == STATUS_COMPLETED:
        logger.warning("Audit %s already completed; ignoring failure: %s", audit_id, message)
        return audit
    if audit.status == STATUS_FAILED:
        return audit
    audit.status = STATUS_FAILED
    audit.error_message = message
    audit.completed_at = _now()
    await db.flush()
    logger.error("Audit %s failed: %s", audit_id, message)
    return audit


async def fail_stale_audits(db: AsyncSession, older_than: timedelta, message: str | None = None) -> list[str]:
    """Mark audits stuck in ``running`` longer than ``older_than`` as failed."""
    cutoff = _now() - older_than
    result = await db.execute(
        select(Audit).where(Audit.status == STATUS_RUNNING, Audit.started_at < cutoff)
    )
    failed = []
    for audit in result.scalars().all():
        await mark_failed(db, audit.audit_id, message or f"Timed out: still running after {older_than}")
        failed.append(audit.audit_id)
    return failed


async def soft_delete_audit(db: AsyncSession, audit_id: str) -> Audit | None:
    """Set ``deleted_at``; a deleted latest hands the flag to the newest remaining completed run."""
    audit = await get_audit_by_id(db, audit_id, for_update=True)
    if audit is None:
        return None
    if audit.deleted_at is not None:
        return audit
    was_latest = audit.is_latest
    audit.deleted_at = _now()
    audit.is_latest = False
    await db.flush()

    if was_latest:
        result = await db.execute(
            select(Audit)
            .where(
                Audit.case_ref == audit.case_ref,
                Audit.rubric_ref == audit.rubric_ref,
                Audit.audit_id != audit.audit_id,
                Audit.status == STATUS_COMPLETED,
                Audit.deleted_at.is_(None),
            )
            .order_by(Audit.completed_at.desc())
            .limit(1)
        )
        successor = result.scalar_one_or_none()
        if successor is not None:
            successor.is_latest = True
            await db.flush()
            logger.info("Audit %s is now latest for case %s", successor.audit_id, audit.case_ref)
    return audit


async def restore_audit(db: AsyncSession, audit_id: str) -> Audit | None:
    """Undo a soft delete; the restored run becomes latest again if it is the newest completed one."""
    audit = await get_audit_by_id(db, audit_id, for_update=True)
    if audit is None:
        return None
    if audit.deleted_at is None:
        return audit
    audit.deleted_at = None
    await db.flush()
    if audit.status != STATUS_COMPLETED:
        return audit

    newest = await db.scalar(
        select(Audit.audit_id)
        .where(
            Audit.case_ref == audit.case_ref,
            Audit.rubric_ref == audit.rubric_ref,
            Audit.status == STATUS_COMPLETED,
            Audit.deleted_at.is_(None),
        )
        .order_by(Audit.completed_at.desc())
        .limit(1)
    )
    if newest == audit.audit_id:
        await _demote_latest(db, audit.case_ref, audit.rubric_ref, keep_audit_id=audit.audit_id)
        audit.is_latest = True
        await db.flush()
    return audit


async def get_latest_audit(db: AsyncSession, case_ref: str, rubric_ref: str) -> Audit | None:
    result = await db.execute(
        select(Audit).where(
            Audit.case_ref == case_ref,
            Audit.rubric_ref == rubric_ref,
            Audit.is_latest.is_(True),
            Audit.deleted_at.is_(None),
        )
    )
    return result.scalar_one_or_none()


# ---------------------------------------------------------------------------
# Read models
# ---------------------------------------------------------------------------


async def list_reviews(db: AsyncSession, audit_id: str) -> list[AuditStepReview]:
    result = await db.execute(
        select(AuditStepReview)
        .where(AuditStepReview.audit_id == audit_id)
        .order_by(AuditStepReview.step_position, AuditStepReview.sequence)
    )
    return list(result.scalars().all())


def to_review_entry(review: AuditStepReview) -> ReviewEntryOut:
    return ReviewEntryOut(
        sequence=review.sequence,
        kind=review.kind,
        at=review.reviewed_at,
        by=review.reviewer,
        reason=review.reason,
        control_point_index=review.control_point_index,
        point=review.point,
        previous=review.previous,
        override=review.override,
    )


def apply_verdict(audit: Audit, verdict: ComplianceVerdict) -> None:
    audit.score_percentage = verdict.score
    audit.niveau = verdict.niveau
    audit.earned_weight = verdict.earned_weight
    audit.total_weight = verdict.total_weight
    audit.critical_passed = verdict.critical_passed
    audit.critical_total = verdict.critical_total
    audit.is_compliant = verdict.is_compliant


def verdict_from_audit(audit: Audit) -> ComplianceVerdict:
    """Stored verdict columns back as a ``ComplianceVerdict``."""
    critical_passed = audit.critical_passed or 0
    critical_total = audit.critical_total or 0
    return ComplianceVerdict(
        score=audit.score_percentage or 0.0,
        niveau=audit.niveau or "",
        points_critiques=f"{critical_passed}/{critical_total}",
        critical_passed=critical_passed,
        critical_total=critical_total,
        earned_weight=audit.earned_weight or 0.0,
        total_weight=audit.total_weight or 0.0,
    )


def to_step_result_out(row: AuditStepResult, reviews: Sequence[AuditStepReview] = ()) -> StepResultOut:
    return StepResultOut(
        step_position=row.step_position,
        step_name=row.step_name,
        weight=row.weight,
        is_critical=row.is_critical,
        in_rubric=row.in_rubric,
        traite=row.traite,
        conforme=row.conforme,
        score=row.score,
        niveau_conformite=row.niveau_conformite,
        error=row.error,
        control_points=row.control_points,
        raw_result=row.raw_result or {},
        human_review=[to_review_entry(r) for r in reviews],
    )


async def get_audit_detail(db: AsyncSession, audit_id: str) -> AuditDetail | None:
    """Audit with its step results (position order) and review trails."""
    audit = await get_audit_by_id(db, audit_id)
    if audit is None:
        return None
    rows = await list_step_results(db, audit_id)
    reviews = await list_reviews(db, audit_id)
    by_position: dict[int, list[AuditStepReview]] = {}
    for review in reviews:
        by_position.setdefault(review.step_position, []).append(review)

    return AuditDetail(
        id=str(audit.audit_id),
        case_ref=audit.case_ref,
        rubric_ref=audit.rubric_ref,
        rubric_name=audit.rubric_name,
        case_name=audit.case_name,
        case_group=audit.case_group,
        status=audit.status,
        niveau=audit.niveau,
        score_percentage=audit.score_percentage,
        earned_weight=audit.earned_weight,
        total_weight=audit.total_weight,
        critical_passed=audit.critical_passed,
        critical_total=audit.critical_total,
        is_compliant=audit.is_compliant,
        is_latest=audit.is_latest,
        deleted_at=audit.deleted_at,
        started_at=audit.started_at,
        completed_at=audit.completed_at,
        error_message=audit.error_message,
        successful_steps=audit.successful_steps,
        failed_steps=audit.failed_steps,
        total_tokens=audit.total_tokens,
        duration_ms=audit.duration_ms,
        timeline_hash=audit.timeline_hash,
        steps=[to_step_result_out(row, by_position.get(row.step_position, ())) for row in rows],
    )


async def get_case_audit_statistics(db: AsyncSession, case_ref: str) -> CaseAuditStatistics:
    """Aggregate the latest, non-deleted audits of a case (one per rubric)."""
    base = (Audit.case_ref == case_ref, Audit.is_latest.is_(True), Audit.deleted_at.is_(None))
    result = await db.execute(
        select(
            func.count(Audit.audit_id),
            func.sum(case((Audit.is_compliant.is_(True), 1), else_=0)),
            func.avg(Audit.score_percentage),
        ).where(*base, Audit.status == STATUS_COMPLETED)
    )
    completed, compliant, average = result.one()
    total = await db.scalar(select(func.count(Audit.audit_id)).where(Audit.case_ref == case_ref, Audit.deleted_at.is_(None)))
    latest = await db.scalar(
        select(Audit.audit_id).where(*base).order_by(Audit.completed_at.desc()).limit(1)
    )
    return CaseAuditStatistics(
        case_ref=case_ref,
        total_audits=total or 0,
        completed_audits=completed or 0,
        compliant_audits=compliant or 0,
        average_score=round(float(average), 2) if average is not None else None,
        latest_audit_id=str(latest) if latest else None,
    )
