"""Shared fixtures: an in-memory SQLite database and tenant ids."""

import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("SUPER_ADMIN_ORG_ID", "org_super")

from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from pv_triage.models import Base, Study, User, WorkflowStage, WorkflowTrack
from pv_triage.services.permissions import SYSTEM_ROLES

SUPER_ORG_ID = "org_super"
BASE_TIME = datetime(2024, 1, 1, tzinfo=timezone.utc)


@pytest.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # Let SQLAlchemy own BEGIN so savepoints behave on SQLite
    @event.listens_for(engine.sync_engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def org_id() -> str:
    return f"org_{uuid4().hex[:12]}"


@pytest.fixture
def user_id() -> str:
    return str(uuid4())


def make_user(organization_id: str, role: str = "triage", **overrides) -> User:
    definition = SYSTEM_ROLES.get(role, {})
    fields = dict(
        id=str(uuid4()),
        organization_id=organization_id,
        email=f"{uuid4().hex[:8]}@example.com",
        first_name="Test",
        last_name=role.title(),
        role=role,
        role_display_name=definition.get("display_name"),
        permissions=definition.get("permissions", {}),
        is_active=True,
    )
    fields.update(overrides)
    return User(**fields)


def make_study(
    organization_id: str,
    classification: str = "Probable ICSR",
    track: WorkflowTrack | None = WorkflowTrack.ICSR,
    stage: WorkflowStage | None = WorkflowStage.TRIAGE_QUEUE_ICSR,
    minutes: int = 0,
    **overrides,
) -> Study:
    fields = dict(
        id=f"study_{uuid4().hex[:12]}",
        organization_id=organization_id,
        pmid=str(30000000 + minutes),
        title=f"Case report {minutes}",
        icsr_classification=classification,
        workflow_track=track,
        workflow_stage=stage,
        status="Under Triage Review",
        sub_status="triage",
        created_at=BASE_TIME + timedelta(minutes=minutes),
    )
    fields.update(overrides)
    return Study(**fields)


@pytest.fixture
def user_factory():
    return make_user


@pytest.fixture
def study_factory():
    return make_study
