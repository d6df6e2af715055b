"""Database configuration and session management.

This module constructs asynchronous SQLAlchemy engines and session
factories for the application.  Two factories are exposed:

* ``AsyncSessionLocal`` serves request-scoped reads and receipt status
  transitions using ``DATABASE_URL``.
* ``ServiceSessionLocal`` is the trusted connection used by the ledger
  updater.  It prefers ``DATABASE_SERVICE_URL`` and shares the primary
  engine when that is unset.

When no URL is configured a local SQLite database may be used in
development if ``DB_DEV_FALLBACK_SQLITE`` is enabled.  Otherwise the
application fails fast.
"""

from __future__ import annotations

import logging
from typing import Any, AsyncGenerator, Optional

from sqlalchemy.engine.url import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from loyalty.core.config import service_database_url, settings

logger = logging.getLogger(__name__)

SQLITE_FALLBACK_URL = "sqlite+aiosqlite:///./loyalty.db"


def normalise_database_url(url: str) -> str:
    """Return ``url`` rewritten to an async driver.

    SQLite is upgraded to aiosqlite; Postgres URLs (plain, psycopg2 or
    asyncpg) are normalised to psycopg v3 with ``sslmode=require`` unless
    explicitly provided.
    """
    url_obj = make_url(url)
    driver = url_obj.drivername or ""
    if driver == "sqlite":
        return str(url_obj.set(drivername="sqlite+aiosqlite"))
    if driver in {"postgresql", "postgres", "postgresql+psycopg2", "postgresql+asyncpg"}:
        q = dict(url_obj.query or {})
        if not q.get("sslmode"):
            q["sslmode"] = "require"
        return url_obj.set(drivername="postgresql+psycopg", query=q).render_as_string(hide_password=False)
    return url


def build_engine(url: str) -> AsyncEngine:
    url = normalise_database_url(url)
    engine_kwargs: dict[str, Any] = dict(echo=settings.DB_ECHO, pool_pre_ping=True)
    if url.startswith("sqlite"):
        # Writers wait on each other instead of failing fast with "database is locked"
        engine_kwargs["connect_args"] = {"timeout": 30}
    masked = make_url(url).set(password=None)
    logger.info("Creating async engine with URL: %s", masked)
    return create_async_engine(url, **engine_kwargs)


def _resolve_primary_url() -> str:
    db_url = settings.DATABASE_URL
    if db_url:
        return db_url
    if not settings.DB_DEV_FALLBACK_SQLITE:
        raise RuntimeError(
            "No database URL provided via DATABASE_URL; with "
            "DB_DEV_FALLBACK_SQLITE=false a Postgres URL is required."
        )
    return SQLITE_FALLBACK_URL


engine = build_engine(_resolve_primary_url())

_service_url: Optional[str] = service_database_url()
service_engine = build_engine(_service_url) if _service_url else engine

# Create session factories
AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)

ServiceSessionLocal = async_sessionmaker(
    service_engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)

# Declarative base
Base = declarative_base()


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Dependency that yields a database session.

    This function is intended for FastAPI dependency injection.  Each
    session is scoped to the request and closed after use.
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


async def init_db() -> None:
    """Create all tables declared on ``Base``.

    Typically called during application startup.  Schema migrations for
    production databases are managed outside this service.
    """
    async with engine.begin() as conn:
        # Import all models to ensure metadata is populated
        from loyalty.models import tables  # noqa: F401
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables ready")
