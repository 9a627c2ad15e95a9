"""Shared fixtures for integration tests requiring live PostgreSQL."""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine

from buildflow.config import get_settings
from buildflow.storage.orm import Agency
from buildflow.storage.pool_manager import PoolManager

# ── Engine ─────────────────────────────────────────────────────────


@pytest.fixture()
async def async_engine() -> AsyncGenerator[AsyncEngine]:
    """Create an async engine on the main database."""
    engine = create_async_engine(
        get_settings().main_database().to_sqlalchemy("postgresql+psycopg"),
        pool_size=5,
        max_overflow=0,
    )
    yield engine
    await engine.dispose()


# ── Session with savepoint rollback ───────────────────────────────


@pytest.fixture()
async def db_session(
    async_engine: AsyncEngine,
) -> AsyncGenerator[AsyncSession]:
    """Provide a session wrapped in a transaction, rolled back after test.

    Suitable for repository tests that use ``flush()`` but NOT ``commit()``.
    """
    async with async_engine.connect() as conn:
        trans = await conn.begin()
        session = AsyncSession(bind=conn, expire_on_commit=False)

        yield session

        await session.close()
        await trans.rollback()


@pytest.fixture()
async def seed_agency(db_session: AsyncSession) -> Agency:
    """Create an active Agency row with a unique database name."""
    suffix = uuid.uuid4().hex[:8]
    agency = Agency(
        name=f"test-agency-{suffix}",
        domain=f"test-{suffix}.example.com",
        database_name=f"agency_test_{suffix}",
    )
    db_session.add(agency)
    await db_session.flush()
    return agency


# ── Pool manager against the live server ──────────────────────────


@pytest.fixture()
async def live_pools() -> AsyncGenerator[PoolManager]:
    pools = PoolManager.from_settings(get_settings())
    yield pools
    await pools.close_all()
