"""Reasoning-oracle result schemas and orchestration outputs."""

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from callaudit.schemas.rubric import StepDefinition

Conforme = Literal["CONFORME", "NON_CONFORME", "PARTIEL"]
ControlPointStatut = Literal["PRESENT", "ABSENT", "PARTIEL", "NON_APPLICABLE"]

COMPLIANT = "CONFORME"
NOT_AVAILABLE = "N/A"


class Citation(BaseModel):
    """Evidence pointer into the timeline."""

    model_config = ConfigDict(extra="allow")

    texte: str = ""
    minutage: str = ""
    minutage_secondes: float | None = None
    speaker: str = ""
    recording_index: int
    chunk_index: int | None = None
    recording_date: str | None = None
    recording_time: str | None = None
    recording_url: str | None = None


class ControlPoint(BaseModel):
    """Sub-check inside a step result."""

    model_config = ConfigDict(extra="allow")

    point: str
    statut: ControlPointStatut
    commentaire: str = ""
    citations: list[Citation] = Field(default_factory=list)
    minutages: list[str] = Field(default_factory=list)


class TokenUsage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class StepOracleResult(BaseModel):
    """Validated verdict returned by the oracle for one step."""

    model_config = ConfigDict(extra="ignore")

    traite: bool = True
    conforme: Conforme
    score: int = Field(ge=0)
    niveau_conformite: str
    points_controle: list[ControlPoint] = Field(default_factory=list)
    commentaire_global: str = ""
    mots_cles_trouves: list[str] = Field(default_factory=list)
    minutages: list[str] = Field(default_factory=list)
    token_usage: TokenUsage = Field(default_factory=TokenUsage)

    @property
    def total_citations(self) -> int:
        return sum(len(cp.citations) for cp in self.points_controle)


class StepRunResult(BaseModel):
    """Outcome of one attempted step: a validated result or an error marker."""

    step: StepDefinition
    result: StepOracleResult | None = None
    error: str | None = None
    attempts: int = 0
    duration_ms: int = 0

    @property
    def success(self) -> bool:
        return self.result is not None

    @property
    def step_position(self) -> int:
        return self.step.position

    @property
    def conforme(self) -> str | None:
        return self.result.conforme if self.result else None

    @property
    def score(self) -> int | None:
        return self.result.score if self.result else None

    def raw_result(self) -> dict[str, Any]:
        """JSON blob persisted with the step row."""
        if self.result is None:
            return {"error": self.error, "attempts": self.attempts}
        payload = self.result.model_dump(mode="json")
        payload["attempts"] = self.attempts
        return payload


class RunStatistics(BaseModel):
    successful: int = 0
    failed: int = 0
    total_tokens: int = 0
    total_time_seconds: float = 0.0


class OrchestrationResult(BaseModel):
    steps: list[StepRunResult]
    statistics: RunStatistics


class ProductLink(BaseModel):
    """Product match for a case, handed to steps that verify product details."""

    model_config = ConfigDict(extra="allow")

    matched: bool = False
    groupe: str | None = None
    gamme: str | None = None
    formule: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)
