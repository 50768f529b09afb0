"""Pytest configuration and shared fixtures.

Organization:
    - Settings Fixtures: isolated TrailSettings instances
    - Database Fixtures: async SQLite engine and session with all tables
    - Trail Fixtures: schema registry and coordinator wired to the session
"""

from __future__ import annotations

import os
from collections.abc import AsyncGenerator, Iterator
from typing import TYPE_CHECKING

import pytest
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from change_trail.core.settings import TrailSettings, clear_settings_cache
from change_trail.features.changelog import ChangeTrail, SchemaRegistry
from change_trail.infra.logging import clear_log_context
from tests.fixtures.models import register_models

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine

# Keep developer environment variables out of the tests
for _key in list(os.environ):
    if _key.startswith(("CHANGE_TRAIL_", "LOG_")):
        del os.environ[_key]


# ============================================================================
# Settings Fixtures
# ============================================================================


@pytest.fixture(autouse=True)
def _isolate_settings() -> Iterator[None]:
    """Drop cached settings and log context between tests."""
    clear_settings_cache()
    clear_log_context()
    yield
    clear_settings_cache()
    clear_log_context()


@pytest.fixture
def settings() -> TrailSettings:
    """Trail settings with the password field redacted."""
    return TrailSettings(redacted_fields={"password"})


# ============================================================================
# Database Fixtures
# ============================================================================


@pytest.fixture
async def db_engine() -> AsyncGenerator[AsyncEngine]:
    """Create async SQLAlchemy engine with in-memory SQLite.

    The driver's implicit transaction handling is disabled so that
    SAVEPOINT/ROLLBACK TO behave as on PostgreSQL.
    """
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", echo=False)

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_implicit_begin(dbapi_connection, connection_record) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _emit_begin(conn) -> None:
        conn.exec_driver_sql("BEGIN")

    try:
        yield engine
    finally:
        await engine.dispose()


@pytest.fixture
async def db_session(db_engine: AsyncEngine) -> AsyncGenerator[AsyncSession]:
    """Create async database session with every table created.

    Includes the application models from tests.fixtures.models and the
    default ``audit_log`` table, all on ``Base.metadata``.
    """
    from change_trail.core.database.base import Base
    from change_trail.features.changelog import audit_log_table

    audit_log_table("audit_log")

    async with db_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    session_factory = async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)

    async with session_factory() as session:
        try:
            yield session
        finally:
            await session.rollback()

    async with db_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


# ============================================================================
# Trail Fixtures
# ============================================================================


@pytest.fixture
def registry() -> SchemaRegistry:
    """Schema registry with every mapped fixture model registered."""
    return register_models(SchemaRegistry())


@pytest.fixture
def trail(db_session: AsyncSession, registry: SchemaRegistry, settings: TrailSettings) -> ChangeTrail:
    """Coordinator writing to the default audit table."""
    return ChangeTrail(db_session, registry, settings)
