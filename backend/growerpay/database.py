"""Database engine, session factory, base class and unit of work.

Every mutating operation runs inside `unit_of_work()`:
  - with no session supplied it opens one, commits on success and rolls
    back on any exception
  - with a caller-supplied session it joins that transaction; the caller
    commits, and a failure rolls the whole enclosing unit back
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from growerpay.config import settings


def _engine_kwargs() -> dict:
    kwargs: dict = {"echo": settings.debug}
    # SQLite pools do not take sizing arguments
    if not settings.database_url.startswith("sqlite"):
        kwargs.update(pool_size=settings.pool_size, max_overflow=settings.max_overflow)
    return kwargs


engine = create_async_engine(settings.database_url, **_engine_kwargs())

async_session = async_sessionmaker(
    engine, class_=AsyncSession, expire_on_commit=False
)


# ── Base class ──────────────────────────────────────────────

class Base(DeclarativeBase):
    """All payment engine tables."""
    pass


# ── Schema provisioning ─────────────────────────────────────

async def create_schema(bind: AsyncEngine) -> None:
    """Create every table registered on Base.  Safe to call repeatedly."""
    import growerpay.models  # noqa: F401  (registers the mappers)

    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


# ── Unit of work ────────────────────────────────────────────

@asynccontextmanager
async def unit_of_work(
    session_factory: async_sessionmaker = async_session,
    session: AsyncSession | None = None,
) -> AsyncIterator[AsyncSession]:
    """Yield a session whose writes commit or roll back as one unit."""
    if session is not None:
        try:
            yield session
            await session.flush()
        except Exception:
            await session.rollback()
            raise
        return

    async with session_factory() as own:
        try:
            yield own
            await own.commit()
        except Exception:
            await own.rollback()
            raise
