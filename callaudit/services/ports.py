"""Interfaces of the external collaborators the pipeline depends on."""

from collections.abc import Sequence
from typing import Any, Protocol

from callaudit.schemas.audit import CaseInfo
from callaudit.schemas.oracle import ProductLink, StepOracleResult
from callaudit.schemas.rubric import Rubric, StepDefinition
from callaudit.schemas.timeline import RecordingTranscript, Timeline


class ReasoningOracle(Protocol):
    """Judges one rubric step against the timeline.

    May raise ``ConfigurationError``/``NotFoundError`` (non-retriable) or any
    other exception (retried). A dict return value is validated as
    ``StepOracleResult``.
    """

    async def evaluate(
        self,
        step: StepDefinition,
        rubric: Rubric,
        timeline: Timeline,
        timeline_text: str,
        product: ProductLink | None,
    ) -> StepOracleResult | dict[str, Any]: ...


class CaseStore(Protocol):
    async def get_case(self, case_ref: str) -> CaseInfo | None: ...


class TranscriptSource(Protocol):
    async def get_transcripts(self, case_ref: str) -> Sequence[RecordingTranscript]: ...


class ProductLinkResolver(Protocol):
    async def resolve(self, case_ref: str) -> ProductLink | None: ...
