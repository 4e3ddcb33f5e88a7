"""Rubric (audit configuration) and step definition models."""

from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from callaudit.database import Base


class RubricRecord(Base):
    """Named, ordered list of weighted compliance steps."""

    __tablename__ = "rubrics"

    rubric_id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    steps: Mapped[list["RubricStepRecord"]] = relationship(
        back_populates="rubric",
        order_by="RubricStepRecord.position",
        cascade="all, delete-orphan",
        lazy="selectin",
    )


class RubricStepRecord(Base):
    """One rubric step."""

    __tablename__ = "rubric_steps"

    step_pk: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True)
    rubric_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False), ForeignKey("rubrics.rubric_id"), nullable=False
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    weight: Mapped[int] = mapped_column(Integer, nullable=False)
    is_critical: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    severity: Mapped[str] = mapped_column(String(20), nullable=False, default="MEDIUM")
    requires_product_info: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    control_points: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)
    keywords: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)

    rubric: Mapped[RubricRecord] = relationship(back_populates="steps")

    __table_args__ = (UniqueConstraint("rubric_id", "position", name="uq_rubric_steps_position"),)
