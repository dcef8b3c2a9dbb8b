"""
Engine and session lifecycle for the PageCast store.

DATABASE_URL is written in its plain form (postgresql://, mysql://,
sqlite://) and rewritten here to the matching async driver. Pool sizing
comes from the ``database`` section of settings.yaml; SQLite ignores it
and only gets a busy timeout so concurrent writers (the queue consumer,
the scheduler, request handlers) wait instead of failing on a lock.

Request handlers take ``session_scope`` as a dependency; background
jobs and scripts open ``get_session()`` directly. Either way the block
commits on exit and rolls back on any exception.
"""
from __future__ import annotations

import structlog
from contextlib import asynccontextmanager
from typing import AsyncGenerator, AsyncIterator, Optional

from sqlalchemy.ext.asyncio import (
    create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker,
)

from config.settings import DatabaseConfig, get_settings
from database.models import Base

logger = structlog.get_logger()

_ASYNC_DRIVERS = (
    ("postgres://", "postgresql+asyncpg://"),
    ("postgresql://", "postgresql+asyncpg://"),
    ("mysql+pymysql://", "mysql+aiomysql://"),
    ("mysql://", "mysql+aiomysql://"),
    ("sqlite://", "sqlite+aiosqlite://"),
)

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def _to_async_url(db_url: str) -> str:
    """postgresql://... -> postgresql+asyncpg://..., unknown schemes pass through."""
    for plain, driver in _ASYNC_DRIVERS:
        if db_url.startswith(plain):
            return driver + db_url[len(plain):]
    return db_url


def _engine_kwargs(db_url: str, config: Optional[DatabaseConfig] = None) -> dict:
    cfg = config or get_settings().database
    kwargs: dict = {"echo": get_settings().debug}

    if db_url.startswith("sqlite"):
        kwargs["connect_args"] = {"timeout": cfg.sqlite_busy_timeout}
        return kwargs

    kwargs.update(
        pool_size=cfg.pool_size,
        max_overflow=cfg.max_overflow,
        pool_recycle=cfg.pool_recycle,
        pool_timeout=30,
        pool_pre_ping=True,
    )
    return kwargs


def _safe_url(engine: AsyncEngine) -> str:
    """Engine URL with credentials stripped, for logs."""
    return engine.url.render_as_string(hide_password=True).rsplit("@", 1)[-1]


def get_engine() -> AsyncEngine:
    global _engine
    if _engine is not None:
        return _engine

    db_url = _to_async_url(get_settings().database.url)
    _engine = create_async_engine(db_url, **_engine_kwargs(db_url))
    logger.info("db_engine_ready", dialect=_engine.dialect.name, target=_safe_url(_engine))
    return _engine


def _factory() -> async_sessionmaker[AsyncSession]:
    global _session_factory
    if _session_factory is None:
        # Rows are serialized after commit by to_dict(), so keep them loaded
        _session_factory = async_sessionmaker(get_engine(), expire_on_commit=False)
    return _session_factory


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """One unit of work: commit on clean exit, roll back otherwise."""
    async with _factory()() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
        else:
            await session.commit()


async def session_scope() -> AsyncIterator[AsyncSession]:
    async with get_session() as session:
        yield session


async def init_db() -> None:
    """Create any missing tables."""
    engine = get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("db_schema_ready", dialect=engine.dialect.name,
                table_count=len(Base.metadata.tables))


async def close_db() -> None:
    global _engine, _session_factory
    if _engine is None:
        return
    await _engine.dispose()
    _engine = None
    _session_factory = None
    logger.info("db_engine_disposed")
