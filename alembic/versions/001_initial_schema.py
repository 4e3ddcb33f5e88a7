"""Initial schema - rubrics, rubric_steps, audits, audit_step_results, audit_step_reviews.

Revision ID: 001
Revises:
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "rubrics",
        sa.Column("rubric_id", sa.UUID(), primary_key=True),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), nullable=False),
    )

    op.create_table(
        "rubric_steps",
        sa.Column("step_pk", sa.UUID(), primary_key=True),
        sa.Column("rubric_id", sa.UUID(), sa.ForeignKey("rubrics.rubric_id"), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("weight", sa.Integer(), nullable=False),
        sa.Column("is_critical", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("severity", sa.String(20), nullable=False, server_default="MEDIUM"),
        sa.Column("requires_product_info", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("control_points", postgresql.JSONB(), nullable=False, server_default="[]"),
        sa.Column("keywords", postgresql.JSONB(), nullable=False, server_default="[]"),
        sa.UniqueConstraint("rubric_id", "position", name="uq_rubric_steps_position"),
    )

    op.create_table(
        "audits",
        sa.Column("audit_id", sa.UUID(), primary_key=True),
        sa.Column("case_ref", sa.Text(), nullable=False),
        sa.Column("rubric_ref", sa.Text(), nullable=False),
        sa.Column("rubric_name", sa.Text(), nullable=True),
        sa.Column("rubric_snapshot", postgresql.JSONB(), nullable=False),
        sa.Column("case_name", sa.Text(), nullable=True),
        sa.Column("case_group", sa.Text(), nullable=True),
        sa.Column("run_key", sa.Text(), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="running"),
        sa.Column("niveau", sa.String(20), nullable=True),
        sa.Column("score_percentage", sa.Float(), nullable=True),
        sa.Column("earned_weight", sa.Float(), nullable=True),
        sa.Column("total_weight", sa.Float(), nullable=True),
        sa.Column("critical_passed", sa.Integer(), nullable=True),
        sa.Column("critical_total", sa.Integer(), nullable=True),
        sa.Column("is_compliant", sa.Boolean(), nullable=True),
        sa.Column("is_latest", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("deleted_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("started_at", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("completed_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("successful_steps", sa.Integer(), nullable=True),
        sa.Column("failed_steps", sa.Integer(), nullable=True),
        sa.Column("total_tokens", sa.Integer(), nullable=True),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        sa.Column("recordings_count", sa.Integer(), nullable=True),
        sa.Column("timeline_chunks", sa.Integer(), nullable=True),
        sa.Column("timeline_hash", sa.String(64), nullable=True),
    )
    # Partial unique: one latest live audit per case + rubric
    op.create_index(
        "uq_audits_latest_per_case_rubric",
        "audits",
        ["case_ref", "rubric_ref"],
        unique=True,
        postgresql_where=sa.text("is_latest AND deleted_at IS NULL"),
    )
    op.create_index(
        "uq_audits_run_key",
        "audits",
        ["run_key"],
        unique=True,
        postgresql_where=sa.text("run_key IS NOT NULL"),
    )
    op.create_index("ix_audits_case_rubric", "audits", ["case_ref", "rubric_ref"])

    op.create_table(
        "audit_step_results",
        sa.Column("step_result_id", sa.UUID(), primary_key=True),
        sa.Column("audit_id", sa.UUID(), sa.ForeignKey("audits.audit_id"), nullable=False),
        sa.Column("step_position", sa.Integer(), nullable=False),
        sa.Column("step_name", sa.Text(), nullable=False, server_default=""),
        sa.Column("weight", sa.Integer(), nullable=True),
        sa.Column("is_critical", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("severity", sa.String(20), nullable=True),
        sa.Column("in_rubric", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("traite", sa.Boolean(), nullable=True),
        sa.Column("conforme", sa.String(20), nullable=True),
        sa.Column("score", sa.Integer(), nullable=True),
        sa.Column("niveau_conformite", sa.String(20), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("total_citations", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_tokens", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("raw_result", postgresql.JSONB(), nullable=False, server_default="{}"),
        sa.Column("updated_at", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.UniqueConstraint("audit_id", "step_position", name="uq_audit_step_results_position"),
    )

    op.create_table(
        "audit_step_reviews",
        sa.Column("review_id", sa.UUID(), primary_key=True),
        sa.Column("audit_id", sa.UUID(), sa.ForeignKey("audits.audit_id"), nullable=False),
        sa.Column("step_position", sa.Integer(), nullable=False),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("kind", sa.String(20), nullable=False),
        sa.Column("control_point_index", sa.Integer(), nullable=True),
        sa.Column("point", sa.Text(), nullable=True),
        sa.Column("reviewed_at", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("reviewer", sa.Text(), nullable=True),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("previous", postgresql.JSONB(), nullable=False),
        sa.Column("override", postgresql.JSONB(), nullable=False),
        sa.UniqueConstraint(
            "audit_id", "step_position", "sequence", name="uq_audit_step_reviews_sequence"
        ),
    )


def downgrade() -> None:
    op.drop_table("audit_step_reviews")
    op.drop_table("audit_step_results")
    op.drop_index("ix_audits_case_rubric", table_name="audits")
    op.drop_index("uq_audits_run_key", table_name="audits")
    op.drop_index("uq_audits_latest_per_case_rubric", table_name="audits")
    op.drop_table("audits")
    op.drop_table("rubric_steps")
    op.drop_table("rubrics")
