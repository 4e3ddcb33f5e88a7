"""Audit runner - one case, one rubric, one audit run end to end.

Stages: case lookup, rubric snapshot, timeline, pending audit, step
orchestration, scoring, then step results and finalization in a single
transaction. A single step of a completed audit can also be re-run against
the same timeline.
"""

import asyncio
import logging
import time

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from callaudit.database import session_scope
from callaudit.engine.orchestrator import StepOrchestrator, resolve_citations
from callaudit.engine.scorer import score_audit, thresholds_from_settings
from callaudit.engine.timeline import build_timeline, render_timeline_text
from callaudit.errors import (
    CaseNotFoundError,
    InvalidAuditStateError,
    NonRetriableError,
    NotFoundError,
    RubricNotFoundError,
    TimelineChangedError,
)
from callaudit.schemas.audit import (
    STATUS_COMPLETED,
    STATUS_FAILED,
    AuditDetail,
    ComplianceThresholds,
    RunOutcome,
    StepRerunComparison,
    StepRerunOutcome,
)
from callaudit.schemas.oracle import ProductLink
from callaudit.schemas.rubric import Rubric
from callaudit.services.ports import CaseStore, ProductLinkResolver, ReasoningOracle, TranscriptSource
from callaudit.storage.repositories import (
    create_pending_audit,
    finalize_audit,
    get_audit_by_id,
    get_audit_detail,
    get_rubric_snapshot,
    get_step_result,
    mark_failed,
    rubric_from_audit,
    to_step_result_out,
    upsert_step_result,
    upsert_step_results,
    verdict_from_audit,
)
from callaudit.storage.reviews import list_step_reviews, recompute_compliance
from callaudit.utils.canonical import fingerprint

logger = logging.getLogger(__name__)


class AuditRunner:
    """Wires the collaborators together and drives one audit run."""

    def __init__(
        self,
        case_store: CaseStore,
        transcript_source: TranscriptSource,
        oracle: ReasoningOracle,
        product_resolver: ProductLinkResolver | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        orchestrator: StepOrchestrator | None = None,
        thresholds: ComplianceThresholds | None = None,
    ):
        self.case_store = case_store
        self.transcript_source = transcript_source
        self.product_resolver = product_resolver
        self.session_factory = session_factory
        self.orchestrator = orchestrator or StepOrchestrator(oracle)
        self.thresholds = thresholds or thresholds_from_settings()

    async def _load_rubric(self, rubric_ref: str) -> Rubric:
        async with session_scope(self.session_factory) as db:
            rubric = await get_rubric_snapshot(db, rubric_ref)
        if rubric is None:
            raise RubricNotFoundError(rubric_ref)
        return rubric

    async def _resolve_product(self, case_ref: str) -> ProductLink | None:
        if self.product_resolver is None:
            return None
        try:
            return await self.product_resolver.resolve(case_ref)
        except Exception as exc:
            logger.warning("Product link lookup failed for case %s: %s", case_ref, exc)
            return None

    async def _fail(self, audit_id: str, message: str) -> None:
        async with session_scope(self.session_factory) as db:
            await mark_failed(db, audit_id, message)

    async def run_audit(
        self,
        case_ref: str,
        rubric: Rubric | None = None,
        rubric_ref: str | None = None,
        run_key: str | None = None,
    ) -> RunOutcome:
        """Run an audit of ``case_ref``.

        Pass either a rubric snapshot or the id of a stored rubric. A
        missing case, rubric or usable transcript is a skip, not an error;
        no audit row is created for skips.
        """
        started = time.monotonic()

        if rubric is None and not rubric_ref:
            return RunOutcome(status="skipped", reason="No rubric given")

        try:
            case = await self.case_store.get_case(case_ref)
            if case is None:
                raise CaseNotFoundError(case_ref)
            if rubric is None:
                rubric = await self._load_rubric(rubric_ref)
            transcripts = await self.transcript_source.get_transcripts(case_ref)
        except NotFoundError as exc:
            logger.warning("%s; audit of case %s skipped", exc, case_ref)
            return RunOutcome(status="skipped", reason=str(exc))

        timeline = build_timeline(transcripts)
        if timeline.is_empty:
            logger.warning("Case %s has no usable transcripts; audit skipped", case_ref)
            return RunOutcome(status="skipped", reason="No usable transcripts")

        product = await self._resolve_product(case_ref) if rubric.needs_product_info else None

        async with session_scope(self.session_factory) as db:
            audit = await create_pending_audit(db, case, rubric, run_key=run_key)
            audit_id = audit.audit_id
            audit_status = audit.status
            previous_error = audit.error_message

        if audit_status == STATUS_COMPLETED:
            return await self._outcome_from_stored(audit_id)
        if audit_status == STATUS_FAILED:
            return RunOutcome(status="failed", audit_id=audit_id, reason=previous_error)

        try:
            orchestration = await self.orchestrator.run(
                rubric, timeline, render_timeline_text(timeline), product
            )
        except NonRetriableError as exc:
            await self._fail(audit_id, str(exc))
            return RunOutcome(
                status="failed",
                audit_id=audit_id,
                reason=str(exc),
                duration_ms=int((time.monotonic() - started) * 1000),
            )
        except (Exception, asyncio.CancelledError) as exc:
            await self._fail(audit_id, str(exc) or exc.__class__.__name__)
            raise

        verdict = score_audit(orchestration.steps, rubric, self.thresholds)
        duration_ms = int((time.monotonic() - started) * 1000)

        try:
            async with session_scope(self.session_factory) as db:
                audit = await get_audit_by_id(db, audit_id)
                await upsert_step_results(db, audit, orchestration.steps)
                await finalize_audit(
                    db,
                    audit_id,
                    verdict,
                    orchestration.statistics,
                    duration_ms=duration_ms,
                    recordings_count=len(timeline.recordings),
                    timeline_chunks=timeline.total_chunks,
                    timeline_hash=fingerprint(timeline),
                )
        except (Exception, asyncio.CancelledError) as exc:
            await self._fail(audit_id, f"Persisting results failed: {exc}")
            raise

        return RunOutcome(
            status="completed",
            audit_id=audit_id,
            verdict=verdict,
            successful_steps=orchestration.statistics.successful,
            failed_steps=orchestration.statistics.failed,
            total_tokens=orchestration.statistics.total_tokens,
            duration_ms=duration_ms,
        )

    async def _outcome_from_stored(self, audit_id: str) -> RunOutcome:
        async with session_scope(self.session_factory) as db:
            audit = await get_audit_by_id(db, audit_id)
            return RunOutcome(
                status="completed",
                audit_id=audit_id,
                verdict=verdict_from_audit(audit),
                successful_steps=audit.successful_steps or 0,
                failed_steps=audit.failed_steps or 0,
                total_tokens=audit.total_tokens or 0,
                duration_ms=audit.duration_ms or 0,
            )

    async def rerun_step(
        self,
        audit_id: str,
        step_position: int,
        instructions: str | None = None,
    ) -> StepRerunOutcome | None:
        """Re-run one step of a completed audit and re-score the audit.

        The step is judged against its stored rubric snapshot and a timeline
        rebuilt from the case transcripts, which must hash to the one the
        audit ran on. The stored row is upserted and the verdict recomputed
        in one transaction. None when the audit or the step does not exist.
        """
        started = time.monotonic()

        async with session_scope(self.session_factory) as db:
            audit = await get_audit_by_id(db, audit_id)
            if audit is None:
                return None
            if audit.status != STATUS_COMPLETED:
                raise InvalidAuditStateError(audit_id, audit.status, STATUS_COMPLETED)
            original = await get_step_result(db, audit_id, step_position)
            if original is None:
                return None
            rubric = rubric_from_audit(audit)
            case_ref = audit.case_ref
            timeline_hash = audit.timeline_hash
            original_score = original.score
            original_conforme = original.conforme
            original_citations = original.total_citations or 0

        step = rubric.step(step_position)
        if step is None:
            logger.warning("Audit %s: step %d is not in its rubric snapshot; cannot re-run", audit_id, step_position)
            return None

        timeline = build_timeline(await self.transcript_source.get_transcripts(case_ref))
        if fingerprint(timeline) != timeline_hash:
            raise TimelineChangedError(audit_id)

        product = await self._resolve_product(case_ref) if step.requires_product_info else None
        if instructions:
            step = step.model_copy(update={"description": f"{step.description}\n\n{instructions}".strip()})

        logger.info("Re-running step %d of audit %s", step_position, audit_id)
        rerun = await self.orchestrator.run_step(step, rubric, timeline, render_timeline_text(timeline), product)
        resolve_citations([rerun], timeline)

        async with session_scope(self.session_factory) as db:
            audit = await get_audit_by_id(db, audit_id, for_update=True)
            if rerun.success:
                row = await upsert_step_result(db, audit, rerun)
                verdict = await recompute_compliance(db, audit)
            else:
                row = await get_step_result(db, audit_id, step_position)
                verdict = verdict_from_audit(audit)
            step_out = to_step_result_out(row, await list_step_reviews(db, audit_id, step_position))

        comparison = None
        if rerun.success:
            new_citations = rerun.result.total_citations
            comparison = StepRerunComparison(
                score_changed=original_score != rerun.score,
                conforme_changed=original_conforme != rerun.conforme,
                citations_changed=original_citations != new_citations,
                original_score=original_score,
                new_score=rerun.score,
                original_conforme=original_conforme,
                new_conforme=rerun.conforme,
                original_citations=original_citations,
                new_citations=new_citations,
            )
            logger.info(
                "Step %d of audit %s re-run: %s/%d (%s) -> %s/%d (%s)",
                step_position,
                audit_id,
                original_score,
                step.weight,
                original_conforme,
                rerun.score,
                step.weight,
                rerun.conforme,
            )

        return StepRerunOutcome(
            audit_id=audit_id,
            step_position=step_position,
            persisted=rerun.success,
            error=rerun.error,
            comparison=comparison,
            step=step_out,
            verdict=verdict,
            tokens_used=rerun.result.token_usage.total_tokens if rerun.result else 0,
            duration_ms=int((time.monotonic() - started) * 1000),
        )

    async def get_audit(self, audit_id: str) -> AuditDetail | None:
        async with session_scope(self.session_factory) as db:
            return await get_audit_detail(db, audit_id)
