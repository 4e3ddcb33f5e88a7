"""Rubric (audit configuration) snapshot schemas."""

from pydantic import BaseModel, ConfigDict, Field, field_validator


class StepDefinition(BaseModel):
    """One weighted rubric step."""

    model_config = ConfigDict(frozen=True)

    position: int = Field(ge=1)
    name: str
    description: str = ""
    weight: int = Field(gt=0)
    is_critical: bool = False
    severity: str = "MEDIUM"
    requires_product_info: bool = False
    control_points: tuple[str, ...] = ()
    keywords: tuple[str, ...] = ()


class Rubric(BaseModel):
    """Immutable snapshot of a rubric, taken once per run."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    description: str | None = None
    steps: tuple[StepDefinition, ...]

    @field_validator("steps", mode="after")
    @classmethod
    def order_and_check_positions(cls, v: tuple[StepDefinition, ...]) -> tuple[StepDefinition, ...]:
        positions = [s.position for s in v]
        if len(positions) != len(set(positions)):
            raise ValueError("step positions must be unique within a rubric")
        return tuple(sorted(v, key=lambda s: s.position))

    @property
    def total_weight(self) -> int:
        return sum(s.weight for s in self.steps)

    @property
    def needs_product_info(self) -> bool:
        return any(s.requires_product_info for s in self.steps)

    def step(self, position: int) -> StepDefinition | None:
        for s in self.steps:
            if s.position == position:
                return s
        return None
