"""Step orchestrator - one oracle call per rubric step, bounded concurrency.

A step whose retries are exhausted is recorded as failed and the run goes
on; a non-retriable error aborts the whole run and cancels pending steps.
"""

import asyncio
import logging
import time
from collections.abc import Sequence

from pydantic import ValidationError

from callaudit.config import settings
from callaudit.engine.retry import RetryPolicy
from callaudit.errors import NonRetriableError, OracleResponseError
from callaudit.schemas.oracle import (
    NOT_AVAILABLE,
    OrchestrationResult,
    ProductLink,
    RunStatistics,
    StepOracleResult,
    StepRunResult,
)
from callaudit.schemas.rubric import Rubric, StepDefinition
from callaudit.schemas.timeline import Timeline
from callaudit.services.ports import ReasoningOracle

logger = logging.getLogger(__name__)


def parse_oracle_result(raw: object) -> StepOracleResult:
    """Validate the oracle payload at the boundary."""
    if isinstance(raw, StepOracleResult):
        return raw
    try:
        return StepOracleResult.model_validate(raw)
    except ValidationError as exc:
        raise OracleResponseError(f"Oracle returned an invalid step result: {exc.error_count()} error(s)") from exc


def resolve_citations(steps: Sequence[StepRunResult], timeline: Timeline) -> tuple[int, int]:
    """Stamp recording date/time/url onto every citation.

    Unknown recording indices get "N/A" instead of being dropped.
    Returns (resolved, unresolved) counts.
    """
    resolved = unresolved = 0
    for step in steps:
        if step.result is None:
            continue
        for cp in step.result.points_controle:
            for citation in cp.citations:
                rec = timeline.recording(citation.recording_index)
                if rec is None:
                    citation.recording_date = NOT_AVAILABLE
                    citation.recording_time = NOT_AVAILABLE
                    citation.recording_url = NOT_AVAILABLE
                    unresolved += 1
                    continue
                citation.recording_date = rec.recording_date or NOT_AVAILABLE
                citation.recording_time = rec.recording_time or NOT_AVAILABLE
                citation.recording_url = rec.recording_url or NOT_AVAILABLE
                resolved += 1
    if unresolved:
        logger.warning("%d citation(s) point at unknown recordings; stamped N/A", unresolved)
    return resolved, unresolved


class StepOrchestrator:
    """Runs every step of a rubric snapshot against one timeline."""

    def __init__(
        self,
        oracle: ReasoningOracle,
        retry_policy: RetryPolicy | None = None,
        semaphore: asyncio.Semaphore | None = None,
    ):
        self.oracle = oracle
        self.retry_policy = retry_policy or RetryPolicy.from_settings()
        self.semaphore = semaphore or asyncio.Semaphore(max(1, settings.step_concurrency))

    async def run_step(
        self,
        step: StepDefinition,
        rubric: Rubric,
        timeline: Timeline,
        timeline_text: str,
        product: ProductLink | None = None,
    ) -> StepRunResult:
        """Evaluate one step; transient failures end as an error marker."""
        attempts = 0
        step_product = product if step.requires_product_info else None

        async def call_oracle() -> StepOracleResult:
            nonlocal attempts
            attempts += 1
            raw = await self.oracle.evaluate(step, rubric, timeline, timeline_text, step_product)
            return parse_oracle_result(raw)

        started = time.monotonic()
        async with self.semaphore:
            try:
                result = await self.retry_policy.call(call_oracle)
            except NonRetriableError:
                raise
            except Exception as exc:
                logger.error(
                    "Step %d (%s) failed after %d attempt(s): %s",
                    step.position,
                    step.name,
                    attempts,
                    exc,
                )
                return StepRunResult(
                    step=step,
                    error=str(exc) or exc.__class__.__name__,
                    attempts=attempts,
                    duration_ms=int((time.monotonic() - started) * 1000),
                )

        logger.info(
            "Step %d (%s): %s, score %d/%d, %d citation(s)",
            step.position,
            step.name,
            result.conforme,
            result.score,
            step.weight,
            result.total_citations,
        )
        return StepRunResult(
            step=step,
            result=result,
            attempts=attempts,
            duration_ms=int((time.monotonic() - started) * 1000),
        )

    async def run(
        self,
        rubric: Rubric,
        timeline: Timeline,
        timeline_text: str,
        product: ProductLink | None = None,
    ) -> OrchestrationResult:
        """Evaluate all steps; results come back in step-position order."""
        started = time.monotonic()
        logger.info("Analyzing %d step(s) of rubric %s", len(rubric.steps), rubric.id)

        tasks = [
            asyncio.create_task(self.run_step(step, rubric, timeline, timeline_text, product))
            for step in rubric.steps
        ]
        try:
            if tasks:
                done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
                for task in done:
                    if task.exception() is not None:
                        raise task.exception()
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

        steps = sorted((t.result() for t in tasks), key=lambda r: r.step_position)
        resolve_citations(steps, timeline)

        statistics = RunStatistics(
            successful=sum(1 for s in steps if s.success),
            failed=sum(1 for s in steps if not s.success),
            total_tokens=sum(s.result.token_usage.total_tokens for s in steps if s.result),
            total_time_seconds=round(time.monotonic() - started, 3),
        )
        logger.info(
            "All steps analyzed: %d ok, %d failed, %d tokens, %.1fs",
            statistics.successful,
            statistics.failed,
            statistics.total_tokens,
            statistics.total_time_seconds,
        )
        return OrchestrationResult(steps=steps, statistics=statistics)
