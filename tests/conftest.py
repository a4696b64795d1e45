"""
Shared test fixtures.

* Engine-level tests run the real ``TripLifecycleEngine`` against the
  in-memory ports in ``tests.fakes``.
* Repository / API tests use an in-memory SQLite database (via aiosqlite)
  so they run without Docker / PostgreSQL / Redis.  The production models
  carry nothing PostgreSQL-specific, so they are used as-is.
"""

from typing import AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from dispatch.domain.lifecycle import TripLifecycleEngine
from dispatch.infrastructure.database import Base
from dispatch.infrastructure import models  # noqa: F401
from tests.fakes import (
    InMemoryActorLocks,
    InMemoryDriverRegistry,
    InMemoryTripStore,
    RecordingUnitOfWork,
    TickingClock,
)


# ── Test DB (SQLite in-memory) ────────────────────────────────────────

TEST_DB_URL = "sqlite+aiosqlite:///:memory:"

test_engine = create_async_engine(TEST_DB_URL, echo=False, poolclass=StaticPool)
TestSessionFactory = async_sessionmaker(
    test_engine, class_=AsyncSession, expire_on_commit=False
)


# pysqlite/aiosqlite defer BEGIN on their own, which breaks SAVEPOINT.
# Hand transaction control to SQLAlchemy instead.
@event.listens_for(test_engine.sync_engine, "connect")
def _disable_driver_transactions(dbapi_connection, connection_record):
    dbapi_connection.isolation_level = None


@event.listens_for(test_engine.sync_engine, "begin")
def _emit_begin(conn):
    conn.exec_driver_sql("BEGIN")


# ── Fixtures ──────────────────────────────────────────────────────────


@pytest_asyncio.fixture
async def create_tables():
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest_asyncio.fixture
async def db_session(create_tables) -> AsyncGenerator[AsyncSession, None]:
    """Create tables, yield a session, then drop everything."""
    async with TestSessionFactory() as session:
        yield session


@pytest.fixture
def trip_store() -> InMemoryTripStore:
    return InMemoryTripStore()


@pytest.fixture
def driver_registry(trip_store) -> InMemoryDriverRegistry:
    return InMemoryDriverRegistry(trips=trip_store)


@pytest.fixture
def uow() -> RecordingUnitOfWork:
    return RecordingUnitOfWork()


@pytest.fixture
def actor_locks() -> InMemoryActorLocks:
    return InMemoryActorLocks()


@pytest.fixture
def engine(trip_store, driver_registry, uow) -> TripLifecycleEngine:
    return TripLifecycleEngine(
        trip_store, driver_registry, uow, clock=TickingClock()
    )
