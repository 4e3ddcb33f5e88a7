"""Tests for the audit lifecycle repository functions."""

from datetime import timedelta

import pytest
from sqlalchemy import func, select

from callaudit.engine.scorer import score_audit
from callaudit.errors import InvalidAuditStateError
from callaudit.models import Audit, AuditStepResult, RubricRecord, RubricStepRecord
from callaudit.schemas.oracle import RunStatistics
from callaudit.schemas.rubric import StepDefinition
from callaudit.storage.repositories import (
    create_pending_audit,
    fail_stale_audits,
    finalize_audit,
    get_audit_by_id,
    get_audit_detail,
    get_case_audit_statistics,
    get_latest_audit,
    get_rubric_snapshot,
    mark_failed,
    restore_audit,
    soft_delete_audit,
    upsert_step_result,
    upsert_step_results,
)

STATS = RunStatistics(successful=4, failed=0, total_tokens=400, total_time_seconds=1.5)


async def _completed_audit(db, case_info, rubric, make_run_result, failing=()):
    audit = await create_pending_audit(db, case_info, rubric)
    results = [
        make_run_result(step, conforme="NON_CONFORME", score=0) if step.position in failing else make_run_result(step)
        for step in rubric.steps
    ]
    await upsert_step_results(db, audit, results)
    await finalize_audit(db, audit.audit_id, score_audit(results, rubric), STATS)
    return audit


async def _count(db, model, **filters):
    stmt = select(func.count()).select_from(model)
    for key, value in filters.items():
        stmt = stmt.where(getattr(model, key) == value)
    return await db.scalar(stmt)


@pytest.mark.asyncio
async def test_create_pending_audit_is_running(db, case_info, rubric):
    """A new audit starts running, not latest, with the rubric snapshot stored."""
    audit = await create_pending_audit(db, case_info, rubric)
    assert audit.status == "running"
    assert audit.is_latest is False
    assert audit.case_name == "Jeanne Martin"
    assert audit.rubric_snapshot["steps"][1]["is_critical"] is True


@pytest.mark.asyncio
async def test_run_key_makes_creation_idempotent(db, case_info, rubric):
    """Creating twice with the same run key returns the same audit."""
    first = await create_pending_audit(db, case_info, rubric, run_key="job-1")
    second = await create_pending_audit(db, case_info, rubric, run_key="job-1")
    assert first.audit_id == second.audit_id
    assert await _count(db, Audit) == 1


@pytest.mark.asyncio
async def test_upsert_step_result_twice_keeps_one_row(db, case_info, rubric, make_run_result):
    """Upserting the same step twice leaves exactly one row."""
    audit = await create_pending_audit(db, case_info, rubric)
    step = rubric.steps[0]
    await upsert_step_result(db, audit, make_run_result(step))
    await upsert_step_result(db, audit, make_run_result(step))
    assert await _count(db, AuditStepResult, audit_id=audit.audit_id) == 1


@pytest.mark.asyncio
async def test_upsert_step_result_last_write_wins(db, case_info, rubric, make_run_result):
    """A refreshed result replaces the stored verdict."""
    audit = await create_pending_audit(db, case_info, rubric)
    step = rubric.steps[0]
    await upsert_step_result(db, audit, make_run_result(step, error="timeout"))
    row = await upsert_step_result(db, audit, make_run_result(step, conforme="PARTIEL", score=4))
    assert row.error is None
    assert row.conforme == "PARTIEL"
    assert row.score == 4
    assert row.raw_result["attempts"] == 1


@pytest.mark.asyncio
async def test_failed_step_is_stored_with_error(db, case_info, rubric, make_run_result):
    """A failed step is persisted with its error and no verdict."""
    audit = await create_pending_audit(db, case_info, rubric)
    row = await upsert_step_result(db, audit, make_run_result(rubric.steps[2], error="upstream timeout"))
    assert row.conforme is None
    assert row.score is None
    assert row.raw_result == {"error": "upstream timeout", "attempts": 3}


@pytest.mark.asyncio
async def test_step_outside_rubric_is_accepted_and_flagged(db, case_info, rubric, make_run_result):
    """Unknown step positions are stored with in_rubric=False."""
    audit = await create_pending_audit(db, case_info, rubric)
    stray = StepDefinition(position=99, name="Stray", weight=5)
    row = await upsert_step_result(db, audit, make_run_result(stray))
    assert row.in_rubric is False
    assert row.is_critical is False


@pytest.mark.asyncio
async def test_finalize_completes_and_marks_latest(db, case_info, rubric, make_run_result):
    """Finalizing writes the verdict and makes the audit latest."""
    audit = await _completed_audit(db, case_info, rubric, make_run_result)
    assert audit.status == "completed"
    assert audit.is_latest is True
    assert audit.score_percentage == 100.0
    assert audit.niveau == "EXCELLENT"
    assert audit.critical_passed == 2
    assert audit.successful_steps == 4
    assert audit.total_tokens == 400
    assert audit.completed_at is not None


@pytest.mark.asyncio
async def test_finalize_demotes_previous_latest(db, case_info, rubric, make_run_result):
    """Only the most recently finalized audit of a case/rubric is latest."""
    first = await _completed_audit(db, case_info, rubric, make_run_result)
    second = await _completed_audit(db, case_info, rubric, make_run_result, failing=(2,))
    await db.refresh(first)
    assert first.is_latest is False
    assert second.is_latest is True
    assert second.niveau == "REJET"
    assert await _count(db, Audit, is_latest=True) == 1
    latest = await get_latest_audit(db, case_info.case_ref, rubric.id)
    assert latest.audit_id == second.audit_id


@pytest.mark.asyncio
async def test_finalize_rejects_non_running_audit(db, case_info, rubric, make_run_result):
    """A completed or failed audit cannot be finalized again."""
    audit = await _completed_audit(db, case_info, rubric, make_run_result)
    with pytest.raises(InvalidAuditStateError):
        await finalize_audit(db, audit.audit_id, score_audit([], rubric), STATS)

    failed = await create_pending_audit(db, case_info, rubric)
    await mark_failed(db, failed.audit_id, "boom")
    with pytest.raises(InvalidAuditStateError):
        await finalize_audit(db, failed.audit_id, score_audit([], rubric), STATS)


@pytest.mark.asyncio
async def test_mark_failed_sets_terminal_state(db, case_info, rubric):
    """A running audit can be failed with a message, which is kept."""
    audit = await create_pending_audit(db, case_info, rubric)
    await mark_failed(db, audit.audit_id, "Configuration error: missing key")
    await mark_failed(db, audit.audit_id, "second message")
    assert audit.status == "failed"
    assert audit.error_message == "Configuration error: missing key"
    assert audit.is_latest is False


@pytest.mark.asyncio
async def test_mark_failed_never_overwrites_completed(db, case_info, rubric, make_run_result):
    """Failing a completed audit is a no-op."""
    audit = await _completed_audit(db, case_info, rubric, make_run_result)
    await mark_failed(db, audit.audit_id, "late crash")
    assert audit.status == "completed"
    assert audit.error_message is None
    assert audit.is_latest is True


@pytest.mark.asyncio
async def test_mark_failed_unknown_audit(db):
    """Unknown ids return None."""
    assert await mark_failed(db, "00000000-0000-0000-0000-000000000000", "x") is None


@pytest.mark.asyncio
async def test_fail_stale_audits(db, case_info, rubric):
    """Runs stuck in running past the cutoff are failed."""
    audit = await create_pending_audit(db, case_info, rubric)
    assert await fail_stale_audits(db, timedelta(hours=1)) == []
    failed = await fail_stale_audits(db, timedelta(seconds=-60))
    assert failed == [audit.audit_id]
    assert audit.status == "failed"


@pytest.mark.asyncio
async def test_soft_delete_promotes_previous_completed(db, case_info, rubric, make_run_result):
    """Deleting the latest audit hands the flag to the previous completed run."""
    first = await _completed_audit(db, case_info, rubric, make_run_result)
    second = await _completed_audit(db, case_info, rubric, make_run_result)
    await soft_delete_audit(db, second.audit_id)
    await db.refresh(first)
    assert second.deleted_at is not None
    assert second.is_latest is False
    assert first.is_latest is True
    assert await _count(db, Audit) == 2


@pytest.mark.asyncio
async def test_restore_makes_newest_latest_again(db, case_info, rubric, make_run_result):
    """Restoring the newest completed audit returns the latest flag to it."""
    first = await _completed_audit(db, case_info, rubric, make_run_result)
    second = await _completed_audit(db, case_info, rubric, make_run_result)
    await soft_delete_audit(db, second.audit_id)
    await restore_audit(db, second.audit_id)
    await db.refresh(first)
    await db.refresh(second)
    assert second.deleted_at is None
    assert second.is_latest is True
    assert first.is_latest is False


@pytest.mark.asyncio
async def test_audit_detail_orders_steps(db, case_info, rubric, make_run_result):
    """Detail view lists step results by position."""
    audit = await create_pending_audit(db, case_info, rubric)
    results = [make_run_result(step) for step in reversed(rubric.steps)]
    await upsert_step_results(db, audit, results)
    detail = await get_audit_detail(db, audit.audit_id)
    assert [s.step_position for s in detail.steps] == [1, 2, 3, 4]
    assert detail.status == "running"
    assert detail.steps[0].human_review == []


@pytest.mark.asyncio
async def test_audit_detail_missing(db):
    """Unknown ids return None."""
    assert await get_audit_detail(db, "00000000-0000-0000-0000-000000000000") is None


@pytest.mark.asyncio
async def test_case_statistics(db, case_info, rubric, make_run_result):
    """Statistics aggregate latest completed audits per case."""
    await _completed_audit(db, case_info, rubric, make_run_result)
    await _completed_audit(db, case_info, rubric, make_run_result, failing=(1,))
    await create_pending_audit(db, case_info, rubric)
    stats = await get_case_audit_statistics(db, case_info.case_ref)
    assert stats.total_audits == 3
    assert stats.completed_audits == 1
    assert stats.compliant_audits == 1
    assert stats.average_score == 80.0
    assert stats.latest_audit_id is not None


@pytest.mark.asyncio
async def test_rubric_snapshot_loaded_in_position_order(db):
    """Stored rubrics load as immutable snapshots."""
    from datetime import datetime, timezone
    from uuid import uuid4

    rubric_id = str(uuid4())
    steps = [
        RubricStepRecord(
            step_pk=str(uuid4()),
            position=position,
            name=f"Step {position}",
            weight=weight,
            is_critical=position == 2,
            control_points=["a", "b"],
            keywords=[],
        )
        for position, weight in ((2, 20), (1, 10))
    ]
    db.add(RubricRecord(rubric_id=rubric_id, name="Stored", created_at=datetime.now(timezone.utc), steps=steps))
    await db.flush()
    snapshot = await get_rubric_snapshot(db, rubric_id)
    assert [s.position for s in snapshot.steps] == [1, 2]
    assert snapshot.total_weight == 30
    assert snapshot.steps[1].is_critical is True
    assert snapshot.steps[0].control_points == ("a", "b")
    assert await get_rubric_snapshot(db, str(uuid4())) is None


@pytest.mark.asyncio
async def test_get_audit_by_id_roundtrip(db, case_info, rubric):
    """Audits are found by their id."""
    audit = await create_pending_audit(db, case_info, rubric)
    found = await get_audit_by_id(db, audit.audit_id)
    assert found is audit
