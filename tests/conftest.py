"""Shared fixtures: in-memory SQLite database and rubric/oracle builders."""

import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

import pytest
import pytest_asyncio
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.pool import StaticPool

from callaudit.database import Base
from callaudit.models import Audit, AuditStepResult, AuditStepReview, RubricRecord, RubricStepRecord  # noqa: F401
from callaudit.schemas.audit import CaseInfo
from callaudit.schemas.oracle import StepOracleResult, StepRunResult
from callaudit.schemas.rubric import Rubric, StepDefinition


# PostgreSQL-only column types stored as TEXT on SQLite
@compiles(JSONB, "sqlite")
def _compile_jsonb_sqlite(_element, _compiler, **_kw):
    return "TEXT"


@compiles(UUID, "sqlite")
def _compile_uuid_sqlite(_element, _compiler, **_kw):
    return "TEXT"


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def rubric():
    """Four steps, total weight 50; steps 2 and 4 are critical, step 3 needs product info."""
    return Rubric(
        id="rubric-sales",
        name="Sales call",
        steps=(
            StepDefinition(position=1, name="Greeting", weight=10, control_points=("Name given", "Firm given")),
            StepDefinition(position=2, name="Consent", weight=20, is_critical=True, severity="CRITICAL"),
            StepDefinition(position=3, name="Coverage", weight=10, requires_product_info=True),
            StepDefinition(position=4, name="Withdrawal right", weight=10, is_critical=True),
        ),
    )


@pytest.fixture
def case_info():
    return CaseInfo(case_ref="case-42", name="Jeanne Martin", group="Paris")


def oracle_payload(conforme="CONFORME", score=10, points=None, tokens=100):
    return {
        "traite": True,
        "conforme": conforme,
        "score": score,
        "niveau_conformite": "BON" if conforme == "CONFORME" else "INSUFFISANT",
        "points_controle": points if points is not None else [],
        "commentaire_global": "",
        "token_usage": {"prompt_tokens": tokens - 20, "completion_tokens": 20, "total_tokens": tokens},
    }


@pytest.fixture
def make_payload():
    return oracle_payload


@pytest.fixture
def make_run_result():
    """Build a StepRunResult for a rubric step; ``error`` builds a failed one."""

    def build(step, conforme="CONFORME", score=None, points=None, error=None):
        if error is not None:
            return StepRunResult(step=step, error=error, attempts=3)
        payload = oracle_payload(conforme, step.weight if score is None else score, points)
        return StepRunResult(step=step, result=StepOracleResult.model_validate(payload), attempts=1)

    return build
