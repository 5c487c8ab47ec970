"""Shared test fixtures: in-memory SQLite DB, async session, test client, notifier."""

import pytest
import pytest_asyncio
from fastapi.testclient import TestClient
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

import consenthub.models  # noqa: F401
from consenthub import dependencies
from consenthub.dependencies import get_db, get_session_factory
from consenthub.main import app
from consenthub.models.base import Base
from consenthub.services.notifier import get_notifier
from consenthub.sync import LocalConsentGateway

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

test_engine = create_async_engine(TEST_DATABASE_URL, echo=False)


# Enable foreign key enforcement in SQLite (off by default); cascades depend on it.
@event.listens_for(test_engine.sync_engine, "connect")
def _set_sqlite_pragma(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()
test_session_factory = async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture(autouse=True)
async def setup_db():
    """Create all tables before each test, drop after."""
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest_asyncio.fixture(autouse=True)
async def notifier():
    """The process-wide change notifier, emptied after each test."""
    n = get_notifier()
    yield n
    n.close()


@pytest_asyncio.fixture
async def db_session() -> AsyncSession:
    """Yield a test DB session."""
    async with test_session_factory() as session:
        yield session


@pytest.fixture
def session_factory():
    """Factory for independent sessions, e.g. two writers racing on one row."""
    return test_session_factory


@pytest_asyncio.fixture
async def gateway(notifier) -> LocalConsentGateway:
    """In-process store gateway; each call uses its own session and commits."""
    return LocalConsentGateway(test_session_factory, notifier)


@pytest_asyncio.fixture
async def client(db_session: AsyncSession) -> AsyncClient:
    """Yield an httpx AsyncClient wired to the test DB.

    Each request commits like get_db does, so change events are published.
    """

    async def _override_get_db():
        try:
            yield db_session
            await db_session.commit()
        except Exception:
            await db_session.rollback()
            raise

    app.dependency_overrides[get_db] = _override_get_db
    app.dependency_overrides[get_session_factory] = lambda: test_session_factory
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def sync_client(monkeypatch) -> TestClient:
    """Blocking TestClient for WebSocket tests, with the app lifespan running.

    Every HTTP request and stream shares the client's one event loop, so
    change events published by a request reach the stream's subscription.
    Each request gets its own session and commits, like get_db.
    """

    async def _override_get_db():
        async with test_session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    monkeypatch.setattr(dependencies, "engine", test_engine)
    app.dependency_overrides[get_db] = _override_get_db
    app.dependency_overrides[get_session_factory] = lambda: test_session_factory
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()
