"""
db/database.py

Async SQLAlchemy setup.

PostgreSQL (asyncpg) in deployment, SQLite (aiosqlite) in the test suite.
The engine is built from `database_url`; pool sizing only applies to
drivers that pool connections.

Session lifecycle:
- Each HTTP request gets its own AsyncSession via the `get_db` dependency,
  committed on success and rolled back on any exception.
- Background writers (the audit recorder) open their own sessions from
  `AsyncSessionLocal`; they never share the request's session.
"""

import logging
from typing import Any, AsyncGenerator, Dict

from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from insightboard.core.config import get_settings

logger = logging.getLogger(__name__)

settings = get_settings()

# ─── Engine ───────────────────────────────────────────────────────────────────

def _engine_kwargs(url: str) -> Dict[str, Any]:
    kwargs: Dict[str, Any] = {"echo": settings.db_echo}
    if url.startswith("sqlite"):
        return kwargs
    kwargs.update(
        pool_pre_ping=True,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_recycle=3600,
    )
    return kwargs


engine = create_async_engine(settings.database_url, **_engine_kwargs(settings.database_url))

# ─── Session Factory ──────────────────────────────────────────────────────────
# expire_on_commit=False: committed objects stay readable for the response.

AsyncSessionLocal = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)


# ─── Declarative Base ─────────────────────────────────────────────────────────

class Base(DeclarativeBase):
    """All ORM models inherit from this Base."""
    pass


# ─── FastAPI Dependency ───────────────────────────────────────────────────────

async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Request-scoped database session dependency.

    Usage in a route:
        async def my_endpoint(db: AsyncSession = Depends(get_db)):
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


# ─── Schema Initialization ────────────────────────────────────────────────────

async def init_db() -> None:
    """
    Creates all tables defined in ORM models.

    Production deployments should run migrations instead; create_all()
    cannot alter existing tables.
    """
    # Import models here to register them with Base.metadata before create_all
    from insightboard.db import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables verified / created.")


async def drop_db() -> None:
    from insightboard.db import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
