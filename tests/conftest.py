from collections.abc import AsyncGenerator
from datetime import date, datetime

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import MetaData
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from src.core.database import get_db
from src.core.database.base import Base
from src.core.documents import DocumentRecord, ScopeKey
from src.main import app

# In-memory SQLite; StaticPool keeps one connection so every session sees the same database
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest.fixture
async def test_engine():
    """Fresh database with all tables for each test."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
async def db_session(test_engine) -> AsyncGenerator[AsyncSession, None]:
    """Get test database session."""
    session_factory = async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )
    async with session_factory() as session:
        yield session


@pytest.fixture
async def client(db_session: AsyncSession) -> AsyncGenerator[AsyncClient, None]:
    """Get test HTTP client with overridden database dependency."""

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as client:
        yield client

    app.dependency_overrides.clear()


class SleepRecorder:
    """Stand-in for asyncio.sleep that records requested delays."""

    def __init__(self):
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


class StepClock:
    """Deterministic nanosecond clock: start, start + 1, ..."""

    def __init__(self, start: int = 1_700_000_000_000_000_000):
        self.value = start

    def __call__(self) -> int:
        value = self.value
        self.value += 1
        return value


@pytest.fixture
def sleep_recorder() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def step_clock() -> StepClock:
    return StepClock()


@pytest.fixture
def make_document(db_session: AsyncSession):
    """Insert a document row directly, bypassing the numbering engine."""

    async def factory(
        scope: ScopeKey,
        number: str | None,
        status: str | None = None,
        created_at: datetime | None = None,
    ) -> DocumentRecord:
        record = DocumentRecord(
            workspace_id=scope.workspace_id,
            document_type=scope.document_type.value,
            prefix=scope.prefix,
            number=number,
            namespace=scope.namespace.value,
            issue_date=date(scope.issue_year, 3, 15),
            issue_year=scope.issue_year,
            status=status or ("DRAFT" if scope.is_draft else "PENDING"),
        )
        if created_at is not None:
            record.created_at = created_at
        db_session.add(record)
        await db_session.flush()
        return record

    return factory


@pytest.fixture
async def legacy_db(test_engine, db_session: AsyncSession) -> AsyncSession:
    """
    Session over a documents table without the number uniqueness constraint,
    as databases looked before it existed. Lets tests store duplicate numbers.
    """
    metadata = MetaData()
    legacy_table = DocumentRecord.__table__.to_metadata(metadata)
    for constraint in list(legacy_table.constraints):
        if constraint.name == "uq_documents_number_scope":
            legacy_table.constraints.remove(constraint)

    async with test_engine.begin() as conn:
        await conn.run_sync(DocumentRecord.__table__.drop)
        await conn.run_sync(metadata.create_all)
    return db_session
