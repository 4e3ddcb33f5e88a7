"""Audit run, step result and human review trail models."""

from datetime import datetime

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from callaudit.database import Base

_LATEST_PREDICATE = text("is_latest AND deleted_at IS NULL")


class Audit(Base):
    """One audit run of a case against a rubric: running -> completed | failed."""

    __tablename__ = "audits"

    audit_id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True)
    case_ref: Mapped[str] = mapped_column(Text, nullable=False)
    rubric_ref: Mapped[str] = mapped_column(Text, nullable=False)
    rubric_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    rubric_snapshot: Mapped[dict] = mapped_column(JSONB, nullable=False)
    case_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    case_group: Mapped[str | None] = mapped_column(Text, nullable=True)
    run_key: Mapped[str | None] = mapped_column(Text, nullable=True)

    status: Mapped[str] = mapped_column(String(20), nullable=False, default="running")
    niveau: Mapped[str | None] = mapped_column(String(20), nullable=True)
    score_percentage: Mapped[float | None] = mapped_column(Float, nullable=True)
    earned_weight: Mapped[float | None] = mapped_column(Float, nullable=True)
    total_weight: Mapped[float | None] = mapped_column(Float, nullable=True)
    critical_passed: Mapped[int | None] = mapped_column(Integer, nullable=True)
    critical_total: Mapped[int | None] = mapped_column(Integer, nullable=True)
    is_compliant: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    is_latest: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    successful_steps: Mapped[int | None] = mapped_column(Integer, nullable=True)
    failed_steps: Mapped[int | None] = mapped_column(Integer, nullable=True)
    total_tokens: Mapped[int | None] = mapped_column(Integer, nullable=True)
    duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    recordings_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    timeline_chunks: Mapped[int | None] = mapped_column(Integer, nullable=True)
    timeline_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)

    __table_args__ = (
        # At most one authoritative audit per case + rubric
        Index(
            "uq_audits_latest_per_case_rubric",
            "case_ref",
            "rubric_ref",
            unique=True,
            postgresql_where=_LATEST_PREDICATE,
            sqlite_where=_LATEST_PREDICATE,
        ),
        Index(
            "uq_audits_run_key",
            "run_key",
            unique=True,
            postgresql_where=text("run_key IS NOT NULL"),
            sqlite_where=text("run_key IS NOT NULL"),
        ),
        Index("ix_audits_case_rubric", "case_ref", "rubric_ref"),
    )


class AuditStepResult(Base):
    """Per-step verdict; one row per (audit, step_position)."""

    __tablename__ = "audit_step_results"

    step_result_id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True)
    audit_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False), ForeignKey("audits.audit_id"), nullable=False
    )
    step_position: Mapped[int] = mapped_column(Integer, nullable=False)
    step_name: Mapped[str] = mapped_column(Text, nullable=False, default="")
    weight: Mapped[int | None] = mapped_column(Integer, nullable=True)
    is_critical: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    severity: Mapped[str | None] = mapped_column(String(20), nullable=True)
    in_rubric: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    traite: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    conforme: Mapped[str | None] = mapped_column(String(20), nullable=True)
    score: Mapped[int | None] = mapped_column(Integer, nullable=True)
    niveau_conformite: Mapped[str | None] = mapped_column(String(20), nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    total_citations: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    raw_result: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        UniqueConstraint("audit_id", "step_position", name="uq_audit_step_results_position"),
    )

    @property
    def control_points(self) -> list[dict]:
        points = (self.raw_result or {}).get("points_controle")
        return points if isinstance(points, list) else []


class AuditStepReview(Base):
    """Human review trail entry - append-only."""

    __tablename__ = "audit_step_reviews"

    review_id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True)
    audit_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False), ForeignKey("audits.audit_id"), nullable=False
    )
    step_position: Mapped[int] = mapped_column(Integer, nullable=False)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    kind: Mapped[str] = mapped_column(String(20), nullable=False)  # step|control_point
    control_point_index: Mapped[int | None] = mapped_column(Integer, nullable=True)
    point: Mapped[str | None] = mapped_column(Text, nullable=True)
    reviewed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    reviewer: Mapped[str | None] = mapped_column(Text, nullable=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    previous: Mapped[dict] = mapped_column(JSONB, nullable=False)
    override: Mapped[dict] = mapped_column(JSONB, nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "audit_id", "step_position", "sequence", name="uq_audit_step_reviews_sequence"
        ),
    )
