"""
Shared test fixtures: async DB, in-memory Firebase gateways, FastAPI test client.
"""

from unittest.mock import patch

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker

from chatrelay.config import Settings
from chatrelay.database import Base, get_db
from chatrelay.main import app
from chatrelay.services.circuit_breaker import BreakerRegistry
from chatrelay.services.container import build_services

from tests.fakes import TRIGGER_SECRET, FakeIdentity, FakePush, FakeRealtime, FakeStorage, FakeStore


# ── Test Database (SQLite in-memory) ────────────────────

TEST_DB_URL = "sqlite+aiosqlite:///:memory:"

ID_TOKENS = {
    "alice-token": {"uid": "alice"},
    "bob-token": {"uid": "bob"},
    "carol-token": {"uid": "carol"},
    "admin-token": {"uid": "ops", "admin": True},
}


@pytest_asyncio.fixture()
async def db_engine():
    engine = create_async_engine(TEST_DB_URL, echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture()
def session_factory(db_engine):
    return async_sessionmaker(db_engine, expire_on_commit=False)


@pytest_asyncio.fixture()
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture(autouse=True)
def audit_log(session_factory):
    """Route ``log_activity`` writes into the test database."""
    with patch("chatrelay.routes.activity.async_session", session_factory):
        yield session_factory


# ── Mock Settings ───────────────────────────────────────

@pytest.fixture(autouse=True)
def mock_settings():
    """Override settings for tests; patches at ALL import points."""
    test_s = Settings(
        _env_file=None,
        database_url=TEST_DB_URL,
        trigger_secret=TRIGGER_SECRET,
        scheduler_enabled=False,
    )
    with patch("chatrelay.config.settings", test_s), \
         patch("chatrelay.auth.settings", test_s), \
         patch("chatrelay.routes.settings", test_s):
        yield test_s


# ── In-memory Firebase ──────────────────────────────────

@pytest.fixture()
def store():
    return FakeStore()


@pytest.fixture()
def realtime():
    return FakeRealtime()


@pytest.fixture()
def push():
    return FakePush()


@pytest.fixture()
def identity():
    return FakeIdentity(ID_TOKENS)


@pytest.fixture()
def storage():
    return FakeStorage()


@pytest.fixture()
def services(mock_settings, store, realtime, push, identity, storage):
    return build_services(
        mock_settings,
        store=store,
        realtime=realtime,
        push=push,
        identity=identity,
        storage=storage,
        breakers=BreakerRegistry.from_settings(mock_settings),
    )


@pytest_asyncio.fixture()
async def client(services, session_factory):
    """FastAPI test client with test DB and in-memory gateways injected."""

    async def _override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = _override_get_db
    app.state.services = services

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
