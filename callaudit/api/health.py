"""Health and metrics endpoints."""

from typing import Annotated

from fastapi import APIRouter, Depends
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from callaudit.database import get_db
from callaudit.models import Audit

router = APIRouter()


@router.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "ok"}


@router.get("/metrics")
async def metrics(db: Annotated[AsyncSession, Depends(get_db)]):
    """Audit counts per status."""
    result = await db.execute(
        select(Audit.status, func.count(Audit.audit_id))
        .where(Audit.deleted_at.is_(None))
        .group_by(Audit.status)
    )
    return {
        "service": "callaudit",
        "version": "0.1.0",
        "audits": {row_status: count for row_status, count in result.all()},
    }
