from __future__ import annotations

import asyncio
import os
import sys
from pathlib import Path

# Add backend folder to sys.path so `import lms_billing...` works when running from backend root
BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

# Must be set before lms_billing.core.config is imported
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("SECRET_KEY", "test-secret")

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from sqlalchemy.ext.asyncio import create_async_engine  # noqa: E402
from sqlalchemy.pool import NullPool, StaticPool  # noqa: E402

from lms_billing.core.database import Base, build_session_factory  # noqa: E402
from lms_billing.models import tables  # noqa: E402,F401

from fakes import FakeProvider  # noqa: E402


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


# -----------------------------------------------------------------------------
# Async service tests: one in-memory database per test


@pytest_asyncio.fixture
async def engine():
    eng = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest_asyncio.fixture
async def db(engine):
    factory = build_session_factory(engine)
    async with factory() as session:
        yield session


# -----------------------------------------------------------------------------
# Route tests: TestClient runs the app on its own loop, so use a file
# database and NullPool (no connection outlives the loop that opened it).


@pytest.fixture
def file_engine(tmp_path):
    eng = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'billing.db'}", poolclass=NullPool)

    async def _create():
        async with eng.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    asyncio.run(_create())
    return eng


@pytest.fixture
def run_db(file_engine):
    """Run ``fn(session)`` against the file database from a sync test."""
    factory = build_session_factory(file_engine)

    def _run(fn):
        async def _inner():
            async with factory() as session:
                return await fn(session)

        return asyncio.run(_inner())

    return _run


@pytest.fixture
def override_db(file_engine):
    factory = build_session_factory(file_engine)

    async def _get_db():
        async with factory() as session:
            yield session

    return _get_db
