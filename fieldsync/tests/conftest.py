"""Async test fixtures for mirror tests using SQLite and an in-process remote."""

from __future__ import annotations

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from fieldsync.assets.photostore import PhotoStore
from fieldsync.models.base import Base
from fieldsync.tests.fakes import FakeRemote


@pytest.fixture(scope="session")
def anyio_backend():
    return "asyncio"


@pytest_asyncio.fixture
async def engine(tmp_path):
    # A file database: sync steps open several sessions at once, and an
    # in-memory database would be a single shared connection.
    eng = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'mirror.db'}", echo=False)
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest_asyncio.fixture
async def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def remote() -> FakeRemote:
    return FakeRemote()


@pytest.fixture
def photo_store(tmp_path) -> PhotoStore:
    return PhotoStore(tmp_path / "photos")


@pytest_asyncio.fixture
async def client(session_factory, remote, photo_store):
    """HTTPX async test client against the mirror app, wired to the fake remote."""
    from httpx import ASGITransport, AsyncClient

    from fieldsync.app import app
    from fieldsync.database import get_db
    from fieldsync.sync.jobs import SyncJobManager
    from fieldsync.sync.orchestrator import SyncOrchestrator
    from fieldsync.sync.overlay import EditOverlay

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    # The lifespan does not run under ASGITransport; wire state by hand.
    app.state.photo_store = photo_store
    app.state.overlay = EditOverlay(session_factory, ["descriptions_text", "findings"])
    app.state.jobs = SyncJobManager(SyncOrchestrator(remote, session_factory, photo_store))

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c

    await app.state.jobs.shutdown()
    app.dependency_overrides.clear()
