"""Database configuration and session management.

This module constructs an asynchronous SQLAlchemy engine and session
factory for the application. ``DATABASE_URL`` is normalised to an async
driver (psycopg for PostgreSQL, aiosqlite for SQLite). When no URL is
configured a local SQLite database is used only if
``DB_DEV_FALLBACK_SQLITE`` is enabled; otherwise import fails fast.
"""

from __future__ import annotations

import logging
from typing import AsyncGenerator, Any, Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.engine.url import make_url
from sqlalchemy.orm import declarative_base

from lms_billing.core.config import settings

logger = logging.getLogger(__name__)

SQLITE_FALLBACK_URL = "sqlite+aiosqlite:///./billing.db"

# Set by init_db when the dev fallback kicks in; reported by /health
USING_SQLITE_FALLBACK: bool = False
LAST_DB_INIT_ERROR: Optional[str] = None


def normalize_async_url(raw_url: str) -> str:
    """Rewrite a database URL so it uses an async driver.

    ``sqlite://`` becomes ``sqlite+aiosqlite://``; ``postgres://``,
    ``postgresql://`` and the psycopg2/asyncpg variants become
    ``postgresql+psycopg://``. Unknown drivers are returned unchanged.
    """
    try:
        url_obj = make_url(raw_url)
    except Exception:
        return raw_url
    driver = url_obj.drivername or ""
    if driver == "sqlite":
        return url_obj.set(drivername="sqlite+aiosqlite").render_as_string(hide_password=False)
    if driver in {"postgresql", "postgres", "postgresql+psycopg2", "postgresql+asyncpg"}:
        return url_obj.set(drivername="postgresql+psycopg").render_as_string(hide_password=False)
    return raw_url


def _resolve_db_url() -> str:
    db_url = settings.DATABASE_URL
    if not db_url:
        if not settings.DB_DEV_FALLBACK_SQLITE:
            raise RuntimeError(
                "No database URL provided via DATABASE_URL; with "
                "DB_DEV_FALLBACK_SQLITE=false, a Postgres URL is required."
            )
        return SQLITE_FALLBACK_URL
    return normalize_async_url(db_url)


def build_engine(db_url: str) -> AsyncEngine:
    engine_kwargs: dict[str, Any] = dict(echo=False, pool_pre_ping=True)
    return create_async_engine(db_url, **engine_kwargs)


def build_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


db_url = _resolve_db_url()
engine = build_engine(db_url)

# Request-scoped sessions come from this factory
AsyncSessionLocal = build_session_factory(engine)

# Declarative base
Base = declarative_base()


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency: one session per request.

    Anything left uncommitted when the request ends is rolled back.
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise


async def _create_tables(bind: AsyncEngine) -> None:
    from lms_billing.models import tables  # noqa: F401  (registers the models on Base)

    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def init_db() -> None:
    """Create missing tables at startup.

    Production schemas are managed by the migrations under
    ``backend/migrations``; ``create_all`` only adds what is absent. In
    development an unreachable database is swapped for the SQLite
    fallback when ``DB_DEV_FALLBACK_SQLITE`` allows it.
    """
    global engine, AsyncSessionLocal, USING_SQLITE_FALLBACK, LAST_DB_INIT_ERROR
    try:
        await _create_tables(engine)
        return
    except Exception as e:
        LAST_DB_INIT_ERROR = str(e)
        dev = (settings.ENVIRONMENT or "development").lower() == "development"
        if not (dev and settings.DB_DEV_FALLBACK_SQLITE):
            raise
        logger.warning("Database init failed (%s); using %s for development", e, SQLITE_FALLBACK_URL)
    await engine.dispose()
    engine = build_engine(SQLITE_FALLBACK_URL)
    AsyncSessionLocal = build_session_factory(engine)
    USING_SQLITE_FALLBACK = True
    await _create_tables(engine)
