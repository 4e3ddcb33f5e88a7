"""Audit verdict, run outcome and read-model schemas."""

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

NIVEAU_EXCELLENT = "EXCELLENT"
NIVEAU_BON = "BON"
NIVEAU_ACCEPTABLE = "ACCEPTABLE"
NIVEAU_INSUFFISANT = "INSUFFISANT"
NIVEAU_REJET = "REJET"

STATUS_RUNNING = "running"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"


class ComplianceThresholds(BaseModel):
    """Lower bounds (score percentage) for each tier, highest first."""

    excellent: float = 90.0
    bon: float = 75.0
    acceptable: float = 60.0
    inclusive: bool = True


class ComplianceVerdict(BaseModel):
    """Scorer output."""

    score: float
    niveau: str
    points_critiques: str
    critical_passed: int
    critical_total: int
    earned_weight: float
    total_weight: float

    @property
    def is_compliant(self) -> bool:
        return self.niveau != NIVEAU_REJET


class CaseInfo(BaseModel):
    """Identity stamped onto an audit from the case store."""

    case_ref: str
    name: str | None = None
    group: str | None = None


class RunOutcome(BaseModel):
    """What ``run_audit`` hands back: a finished audit or an explicit reason it is not."""

    status: Literal["completed", "failed", "skipped"]
    audit_id: str | None = None
    reason: str | None = None
    verdict: ComplianceVerdict | None = None
    successful_steps: int = 0
    failed_steps: int = 0
    total_tokens: int = 0
    duration_ms: int = 0


class ReviewEntryOut(BaseModel):
    sequence: int
    kind: str
    at: datetime
    by: str | None = None
    reason: str | None = None
    control_point_index: int | None = None
    point: str | None = None
    previous: dict[str, Any]
    override: dict[str, Any]


class StepResultOut(BaseModel):
    step_position: int
    step_name: str
    weight: int | None = None
    is_critical: bool = False
    in_rubric: bool = True
    traite: bool | None = None
    conforme: str | None = None
    score: int | None = None
    niveau_conformite: str | None = None
    error: str | None = None
    control_points: list[dict[str, Any]] = Field(default_factory=list)
    raw_result: dict[str, Any] = Field(default_factory=dict)
    human_review: list[ReviewEntryOut] = Field(default_factory=list)


class AuditDetail(BaseModel):
    id: str
    case_ref: str
    rubric_ref: str
    rubric_name: str | None = None
    case_name: str | None = None
    case_group: str | None = None
    status: str
    niveau: str | None = None
    score_percentage: float | None = None
    earned_weight: float | None = None
    total_weight: float | None = None
    critical_passed: int | None = None
    critical_total: int | None = None
    is_compliant: bool | None = None
    is_latest: bool
    deleted_at: datetime | None = None
    started_at: datetime
    completed_at: datetime | None = None
    error_message: str | None = None
    successful_steps: int | None = None
    failed_steps: int | None = None
    total_tokens: int | None = None
    duration_ms: int | None = None
    timeline_hash: str | None = None
    steps: list[StepResultOut] = Field(default_factory=list)


class StepRerunRequest(BaseModel):
    instructions: str | None = Field(default=None, description="Extra guidance appended to the step description")


class StepRerunComparison(BaseModel):
    """Stored verdict of a step against its fresh re-run."""

    score_changed: bool
    conforme_changed: bool
    citations_changed: bool
    original_score: int | None = None
    new_score: int | None = None
    original_conforme: str | None = None
    new_conforme: str | None = None
    original_citations: int = 0
    new_citations: int = 0


class StepRerunOutcome(BaseModel):
    """Result of re-running one step of a completed audit.

    A re-run whose retries are exhausted is reported with ``error`` and is
    not persisted; the stored step and verdict stay as they were.
    """

    audit_id: str
    step_position: int
    persisted: bool
    error: str | None = None
    comparison: StepRerunComparison | None = None
    step: StepResultOut
    verdict: ComplianceVerdict
    tokens_used: int = 0
    duration_ms: int = 0


class CaseAuditStatistics(BaseModel):
    case_ref: str
    total_audits: int
    completed_audits: int
    compliant_audits: int
    average_score: float | None = None
    latest_audit_id: str | None = None
