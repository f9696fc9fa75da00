"""
Async engine and unit-of-work scope for the sql session store.

The store URL comes from ``settings.database.url`` unless ``configure(url)``
pointed it elsewhere (tests, the store factory). Plain URLs are upgraded to
their async driver:

    sqlite://      sqlite+aiosqlite://
    postgresql://  postgresql+asyncpg://
    mysql://       mysql+aiomysql://

Usage:
    configure("sqlite:///:memory:")    # optional
    await init_db()                    # create tables
    async with get_session() as db:    # one transaction per store call
        row = await db.get(SessionRow, session_id)
    await close_db()                   # dispose on shutdown
"""
from __future__ import annotations

import structlog
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncGenerator, Optional

from sqlalchemy.ext.asyncio import (
    create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker,
)
from sqlalchemy.pool import StaticPool

from config.settings import get_settings
from database.models import Base

logger = structlog.get_logger()

ASYNC_DRIVERS = {
    "sqlite": "sqlite+aiosqlite",
    "postgresql": "postgresql+asyncpg",
    "postgres": "postgresql+asyncpg",
    "mysql": "mysql+aiomysql",
    "mysql+pymysql": "mysql+aiomysql",
}


@dataclass
class _Database:
    engine: AsyncEngine
    sessions: async_sessionmaker[AsyncSession]


_db: Optional[_Database] = None
_url_override: Optional[str] = None


def resolve_url(url: str) -> str:
    """Swap a sync scheme for its async driver; unknown schemes pass through."""
    scheme, sep, rest = url.partition("://")
    if not sep:
        return url
    return f"{ASYNC_DRIVERS.get(scheme, scheme)}://{rest}"


def _is_memory_sqlite(url: str) -> bool:
    path = url.partition("://")[2]
    return url.startswith("sqlite") and (":memory:" in path or path in ("", "/"))


def engine_options(url: str, echo: bool = False) -> dict[str, Any]:
    if url.startswith("sqlite"):
        options: dict[str, Any] = {"echo": echo, "connect_args": {"check_same_thread": False}}
        if _is_memory_sqlite(url):
            # every pooled connection would otherwise get its own empty database
            options["poolclass"] = StaticPool
        return options

    return {
        "echo": echo,
        "pool_size": 10,
        "max_overflow": 20,
        "pool_timeout": 30,
        "pool_recycle": 1800,
        "pool_pre_ping": True,
    }


def configure(url: Optional[str]) -> None:
    """Use ``url`` for the next engine instead of the configured one."""
    global _url_override
    _url_override = url


def _database() -> _Database:
    global _db
    if _db is None:
        settings = get_settings()
        url = resolve_url(_url_override or settings.database.url)
        engine = create_async_engine(url, **engine_options(url, echo=settings.debug))
        _db = _Database(
            engine=engine,
            sessions=async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False),
        )
        logger.info("database_engine_created", dialect=engine.dialect.name,
                    url=engine.url.render_as_string(hide_password=True))
    return _db


def get_engine() -> AsyncEngine:
    return _database().engine


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Commit on success, roll back and re-raise on error."""
    async with _database().sessions() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db() -> None:
    engine = get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("database_initialized", dialect=engine.dialect.name,
                tables=sorted(Base.metadata.tables))


async def close_db() -> None:
    global _db
    if _db is not None:
        await _db.engine.dispose()
        _db = None
        logger.info("database_closed")
