"""Audit read, lifecycle and human review endpoints."""

from typing import Annotated

from fastapi import APIRouter, Body, Depends, HTTPException, Request, status
from pydantic import BaseModel
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from callaudit.database import get_db
from callaudit.errors import InvalidAuditStateError, NonRetriableError, NotFoundError, TimelineChangedError
from callaudit.schemas.audit import (
    STATUS_COMPLETED,
    AuditDetail,
    CaseAuditStatistics,
    StepRerunOutcome,
    StepRerunRequest,
    StepResultOut,
)
from callaudit.schemas.review import ControlPointReviewRequest, ControlPointSummary, StepReviewRequest
from callaudit.services.runner import AuditRunner
from callaudit.storage.repositories import (
    get_audit_by_id,
    get_audit_detail,
    get_case_audit_statistics,
    mark_failed,
    restore_audit,
    soft_delete_audit,
)
from callaudit.storage.reviews import get_control_point_summary, review_control_point, review_step

router = APIRouter()

DbDep = Annotated[AsyncSession, Depends(get_db)]


def get_runner(request: Request) -> AuditRunner:
    """Runner wired at startup as ``app.state.runner``."""
    runner = getattr(request.app.state, "runner", None)
    if runner is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Audit runner not configured",
        )
    return runner


RunnerDep = Annotated[AuditRunner, Depends(get_runner)]


class FailAuditRequest(BaseModel):
    message: str = "Marked failed by operator"


def _audit_not_found() -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Audit not found")


async def _detail_or_404(db: AsyncSession, audit_id: str) -> AuditDetail:
    detail = await get_audit_detail(db, audit_id)
    if detail is None:
        raise _audit_not_found()
    return detail


@router.get("/audits/{audit_id}", response_model=AuditDetail)
async def get_audit(audit_id: str, db: DbDep):
    """Audit with step results in position order and their review trails."""
    return await _detail_or_404(db, audit_id)


@router.delete("/audits/{audit_id}", response_model=AuditDetail)
async def delete_audit(audit_id: str, db: DbDep):
    """Soft delete; the previous completed run of the same case/rubric becomes latest."""
    if await soft_delete_audit(db, audit_id) is None:
        raise _audit_not_found()
    return await _detail_or_404(db, audit_id)


@router.post("/audits/{audit_id}/restore", response_model=AuditDetail)
async def restore(audit_id: str, db: DbDep):
    if await restore_audit(db, audit_id) is None:
        raise _audit_not_found()
    return await _detail_or_404(db, audit_id)


@router.post("/audits/{audit_id}/fail", response_model=AuditDetail)
async def fail_audit(audit_id: str, db: DbDep, body: Annotated[FailAuditRequest | None, Body()] = None):
    """Mark a stuck run failed. Completed audits are left untouched (409)."""
    audit = await get_audit_by_id(db, audit_id)
    if audit is None:
        raise _audit_not_found()
    if audit.status == STATUS_COMPLETED:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Audit already completed",
        )
    await mark_failed(db, audit_id, (body or FailAuditRequest()).message)
    return await _detail_or_404(db, audit_id)


@router.post("/audits/{audit_id}/steps/{step_position}/review", response_model=StepResultOut)
async def review_audit_step(audit_id: str, step_position: int, body: StepReviewRequest, db: DbDep):
    """Override a step verdict and append to its review trail."""
    try:
        result = await review_step(db, audit_id, step_position, body)
    except IntegrityError:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Concurrent review of the same step; retry",
        )
    if result is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Step result not found")
    return result


@router.post("/audits/{audit_id}/steps/{step_position}/rerun", response_model=StepRerunOutcome)
async def rerun_audit_step(
    audit_id: str,
    step_position: int,
    runner: RunnerDep,
    body: Annotated[StepRerunRequest | None, Body()] = None,
):
    """Re-run one step against the same timeline and re-score the audit."""
    try:
        outcome = await runner.rerun_step(audit_id, step_position, (body or StepRerunRequest()).instructions)
    except (InvalidAuditStateError, TimelineChangedError) as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    except NotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    except NonRetriableError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc))
    if outcome is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Step result not found")
    return outcome


@router.get(
    "/audits/{audit_id}/steps/{step_position}/control-points/{index}",
    response_model=ControlPointSummary,
)
async def get_control_point(audit_id: str, step_position: int, index: int, db: DbDep):
    summary = await get_control_point_summary(db, audit_id, step_position, index)
    if summary is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Control point not available")
    return summary


@router.post(
    "/audits/{audit_id}/steps/{step_position}/control-points/{index}",
    response_model=StepResultOut,
)
async def review_audit_control_point(
    audit_id: str,
    step_position: int,
    index: int,
    body: ControlPointReviewRequest,
    db: DbDep,
):
    """Override one control point (1-based index)."""
    try:
        result = await review_control_point(db, audit_id, step_position, index, body)
    except IntegrityError:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Concurrent review of the same step; retry",
        )
    if result is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Control point not available")
    return result


@router.get("/cases/{case_ref}/audits/statistics", response_model=CaseAuditStatistics)
async def case_statistics(case_ref: str, db: DbDep):
    return await get_case_audit_statistics(db, case_ref)
