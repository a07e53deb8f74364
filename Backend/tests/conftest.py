"""
Pytest configuration and fixtures for async database testing.

Each test gets its own in-memory SQLite database (aiosqlite) with the full
schema, so tests never share rows. Set TEST_DATABASE_URL to run against
PostgreSQL instead; tables are dropped after every test in that case.
"""
import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")

from datetime import datetime, timezone

import pytest
from httpx import AsyncClient, ASGITransport
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from agenda.booking_rules import BookingRules, FailurePolicy
from agenda.core.db import Base
from agenda.realtime import AppointmentChangeFeed, BookingEventBus, attach_change_feed

TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL", "sqlite+aiosqlite://")

# Wednesday 2025-01-15, 12:00 in São Paulo
FIXED_NOW = datetime(2025, 1, 15, 15, 0, tzinfo=timezone.utc)


def _enable_sqlite_savepoints(engine):
    # pysqlite manages transactions itself and breaks SAVEPOINT; let SQLAlchemy emit BEGIN
    @event.listens_for(engine.sync_engine, "connect")
    def do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN")


@pytest.fixture(scope="function")
async def async_engine():
    """
    Create async SQLAlchemy engine with a fresh schema.
    """
    if TEST_DATABASE_URL.startswith("sqlite"):
        engine = create_async_engine(
            TEST_DATABASE_URL,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        _enable_sqlite_savepoints(engine)
    else:
        engine = create_async_engine(TEST_DATABASE_URL, pool_pre_ping=True)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    if not TEST_DATABASE_URL.startswith("sqlite"):
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture(scope="function")
def session_factory(async_engine):
    return async_sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture(scope="function")
async def async_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def rules():
    """Booking rules pinned to FIXED_NOW in São Paulo, fail-open."""
    return BookingRules(
        timezone="America/Sao_Paulo",
        failure_policy=FailurePolicy.OPEN,
        clock=lambda: FIXED_NOW,
    )


@pytest.fixture
def strict_rules():
    return BookingRules(
        timezone="America/Sao_Paulo",
        failure_policy=FailurePolicy.CLOSED,
        clock=lambda: FIXED_NOW,
    )


@pytest.fixture
def change_feed():
    feed = AppointmentChangeFeed()
    detach = attach_change_feed(feed)
    yield feed
    detach()


@pytest.fixture
def event_bus():
    return BookingEventBus()


@pytest.fixture(scope="function")
async def client(session_factory, rules, event_bus):
    """
    FastAPI AsyncClient wired to the test database, fixed-clock rules and a
    fresh event bus.
    """
    # Import here so DATABASE_URL is set before the engine is built
    from agenda.main import app
    from agenda.core.db import get_session
    from agenda.public_booking import get_rules

    async def override_get_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session
    app.dependency_overrides[get_rules] = lambda: rules
    previous_bus = app.state.booking_events
    app.state.booking_events = event_bus

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test"
    ) as ac:
        yield ac

    app.dependency_overrides.clear()
    app.state.booking_events = previous_bus
