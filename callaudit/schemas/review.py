"""Human review request/response schemas."""

from pydantic import BaseModel, Field

from callaudit.schemas.oracle import Conforme, ControlPointStatut


class StepReviewRequest(BaseModel):
    """Override for a step verdict; unset fields keep their current value."""

    conforme: Conforme | None = None
    traite: bool | None = None
    score: int | None = Field(default=None, ge=0)
    niveau_conformite: str | None = None
    reviewer: str | None = Field(default=None, min_length=1, max_length=200)
    reason: str | None = Field(default=None, min_length=1, max_length=5000)


class ControlPointReviewRequest(BaseModel):
    """Override for one control point; unset fields keep their current value."""

    statut: ControlPointStatut | None = None
    commentaire: str | None = Field(default=None, max_length=20000)
    reviewer: str | None = Field(default=None, min_length=1, max_length=200)
    reason: str | None = Field(default=None, min_length=1, max_length=5000)


class ControlPointSummary(BaseModel):
    audit_id: str
    step_position: int
    control_point_index: int
    point: str
    statut: str
    commentaire: str
