"""Database models."""

from callaudit.models.audit import Audit, AuditStepResult, AuditStepReview
from callaudit.models.rubric import RubricRecord, RubricStepRecord

__all__ = ["Audit", "AuditStepResult", "AuditStepReview", "RubricRecord", "RubricStepRecord"]
