"""Tests for human review of persisted step results."""

import pytest
import pytest_asyncio
from sqlalchemy import func, select

from callaudit.engine.scorer import score_audit
from callaudit.models import AuditStepReview
from callaudit.schemas.oracle import RunStatistics
from callaudit.schemas.review import ControlPointReviewRequest, StepReviewRequest
from callaudit.storage.repositories import (
    create_pending_audit,
    finalize_audit,
    get_audit_detail,
    upsert_step_results,
)
from callaudit.storage.reviews import get_control_point_summary, review_control_point, review_step

POINTS = [
    {"point": "Name given", "statut": "PRESENT", "commentaire": "Said at 0:03", "citations": []},
    {"point": "Firm given", "statut": "ABSENT", "commentaire": "", "citations": []},
    {"point": "Call purpose", "statut": "PARTIEL", "commentaire": "Vague", "citations": []},
]


@pytest_asyncio.fixture
async def completed_audit(db, case_info, rubric, make_run_result):
    audit = await create_pending_audit(db, case_info, rubric)
    results = [
        make_run_result(step, points=POINTS if step.position == 1 else None)
        for step in rubric.steps
    ]
    await upsert_step_results(db, audit, results)
    await finalize_audit(
        db,
        audit.audit_id,
        score_audit(results, rubric),
        RunStatistics(successful=4, total_tokens=400),
    )
    return audit


async def _review_count(db, audit_id):
    return await db.scalar(
        select(func.count()).select_from(AuditStepReview).where(AuditStepReview.audit_id == audit_id)
    )


@pytest.mark.asyncio
async def test_review_step_overrides_and_keeps_previous(db, completed_audit):
    """The override becomes current and the machine verdict is kept in the trail."""
    out = await review_step(
        db,
        completed_audit.audit_id,
        1,
        StepReviewRequest(conforme="NON_CONFORME", score=0, reviewer="qa@example.com", reason="Name not given"),
    )
    assert out.conforme == "NON_CONFORME"
    assert out.score == 0
    assert out.niveau_conformite == "BON"
    assert out.traite is True
    assert len(out.human_review) == 1
    entry = out.human_review[0]
    assert entry.kind == "step"
    assert entry.by == "qa@example.com"
    assert entry.previous == {"conforme": "CONFORME", "traite": True, "score": 10, "niveau_conformite": "BON"}
    assert entry.override == {"conforme": "NON_CONFORME", "traite": True, "score": 0, "niveau_conformite": "BON"}


@pytest.mark.asyncio
async def test_review_trail_is_append_only_and_chained(db, completed_audit):
    """Each entry's previous equals the prior entry's override."""
    requests = [
        StepReviewRequest(score=5),
        StepReviewRequest(conforme="PARTIEL"),
        StepReviewRequest(niveau_conformite="MOYEN", traite=False),
        StepReviewRequest(score=10, conforme="CONFORME"),
    ]
    for request in requests:
        out = await review_step(db, completed_audit.audit_id, 2, request)

    trail = out.human_review
    assert len(trail) == len(requests)
    assert [e.sequence for e in trail] == [1, 2, 3, 4]
    assert trail[0].previous["score"] == 20
    for k in range(1, len(trail)):
        assert trail[k].previous == trail[k - 1].override
    assert out.score == 10
    assert out.traite is False


@pytest.mark.asyncio
async def test_review_step_recomputes_compliance(db, completed_audit):
    """Failing a critical step on review vetoes the audit."""
    assert completed_audit.niveau == "EXCELLENT"
    await review_step(db, completed_audit.audit_id, 2, StepReviewRequest(conforme="NON_CONFORME", score=0))
    assert completed_audit.niveau == "REJET"
    assert completed_audit.score_percentage == 60.0
    assert completed_audit.critical_passed == 1
    assert completed_audit.is_compliant is False


@pytest.mark.asyncio
async def test_review_step_not_found_has_no_side_effect(db, completed_audit):
    """Unknown steps or audits return None without writing."""
    assert await review_step(db, completed_audit.audit_id, 42, StepReviewRequest(score=1)) is None
    assert await review_step(db, "00000000-0000-0000-0000-000000000000", 1, StepReviewRequest(score=1)) is None
    assert await _review_count(db, completed_audit.audit_id) == 0


@pytest.mark.asyncio
async def test_review_control_point(db, completed_audit):
    """A control point review updates only that point and records the trail."""
    out = await review_control_point(
        db,
        completed_audit.audit_id,
        1,
        2,
        ControlPointReviewRequest(statut="PRESENT", commentaire="Heard at 0:10", reviewer="qa"),
    )
    assert out.control_points[1]["statut"] == "PRESENT"
    assert out.control_points[1]["commentaire"] == "Heard at 0:10"
    assert out.control_points[0]["statut"] == "PRESENT"
    assert out.control_points[2]["statut"] == "PARTIEL"
    entry = out.human_review[0]
    assert entry.kind == "control_point"
    assert entry.control_point_index == 2
    assert entry.point == "Firm given"
    assert entry.previous == {"statut": "ABSENT", "commentaire": ""}
    assert entry.override == {"statut": "PRESENT", "commentaire": "Heard at 0:10"}


@pytest.mark.asyncio
async def test_review_control_point_out_of_range_writes_nothing(db, completed_audit):
    """Index 5 on a step with 3 control points is not available."""
    result = await review_control_point(
        db, completed_audit.audit_id, 1, 5, ControlPointReviewRequest(statut="ABSENT")
    )
    assert result is None
    assert await _review_count(db, completed_audit.audit_id) == 0
    summary = await get_control_point_summary(db, completed_audit.audit_id, 1, 3)
    assert summary.statut == "PARTIEL"


@pytest.mark.asyncio
async def test_review_control_point_on_step_without_points(db, completed_audit):
    """Steps without structured control points never get one created."""
    result = await review_control_point(
        db, completed_audit.audit_id, 2, 1, ControlPointReviewRequest(statut="ABSENT")
    )
    assert result is None
    assert await _review_count(db, completed_audit.audit_id) == 0


@pytest.mark.asyncio
async def test_control_point_summary(db, completed_audit):
    """The summary is 1-based and None when absent."""
    summary = await get_control_point_summary(db, completed_audit.audit_id, 1, 1)
    assert summary.point == "Name given"
    assert summary.statut == "PRESENT"
    assert summary.commentaire == "Said at 0:03"
    assert await get_control_point_summary(db, completed_audit.audit_id, 1, 0) is None
    assert await get_control_point_summary(db, completed_audit.audit_id, 1, 4) is None
    assert await get_control_point_summary(db, completed_audit.audit_id, 9, 1) is None


@pytest.mark.asyncio
async def test_reviews_show_in_audit_detail(db, completed_audit):
    """The detail view carries the review trail per step."""
    await review_step(db, completed_audit.audit_id, 3, StepReviewRequest(score=2, reviewer="qa"))
    detail = await get_audit_detail(db, completed_audit.audit_id)
    by_position = {s.step_position: s for s in detail.steps}
    assert len(by_position[3].human_review) == 1
    assert by_position[1].human_review == []
    assert detail.score_percentage == 84.0
