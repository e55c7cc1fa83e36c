"""
Async SQLAlchemy plumbing shared by the memory tiers.

Tiers never open sessions themselves: the caller passes one in and owns the
commit. Background consolidation opens its own through session_scope().
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from .config import get_settings

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def _async_url(url: str) -> str:
    # Plain postgres URLs from hosting dashboards lack the driver suffix
    for prefix in ("postgres://", "postgresql://"):
        if url.startswith(prefix):
            return "postgresql+asyncpg://" + url[len(prefix):]
    return url


def _engine_options(url: str) -> dict[str, Any]:
    options: dict[str, Any] = {"echo": get_settings().debug}
    if make_url(url).get_backend_name() != "sqlite":
        options.update(pool_size=20, max_overflow=10, pool_pre_ping=True)
    return options


def get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        url = _async_url(get_settings().database_url)
        _engine = create_async_engine(url, **_engine_options(url))
        logger.info("Memory store engine ready (%s)", make_url(url).get_backend_name())
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(bind=get_engine(), expire_on_commit=False)
    return _session_factory


@asynccontextmanager
async def session_scope(
    factory: async_sessionmaker[AsyncSession] | None = None,
) -> AsyncIterator[AsyncSession]:
    """One unit of work: commit on success, roll back and re-raise on error."""
    async with (factory or get_session_factory())() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
        await session.commit()


async def init_db(engine: AsyncEngine | None = None) -> None:
    """Create the memory tables if they are missing."""
    # Model modules register their tables on Base.metadata at import
    from ..models import conversation, episodic, memory, project  # noqa: F401

    async with (engine or get_engine()).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Memory tables created/verified")


async def close_db() -> None:
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
        logger.info("Memory store engine disposed")
    _engine = None
    _session_factory = None
