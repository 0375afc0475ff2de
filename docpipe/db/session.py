"""
Database engine and session factory for the SQL execution record store.

The engine is created lazily so processes running with the in-memory store
never need a database URL or driver.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from functools import lru_cache
from typing import AsyncGenerator

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from docpipe.core.config import get_settings

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def get_engine() -> AsyncEngine:
    settings = get_settings()
    if not settings.database_url:
        raise RuntimeError("DATABASE_URL must be set when RECORD_STORE_BACKEND=sql")
    return create_async_engine(
        settings.database_url,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_pre_ping=True,          # detect stale connections before use
        pool_recycle=3600,
        echo=settings.db_echo_sql,
    )


@lru_cache(maxsize=1)
def get_sessionmaker() -> async_sessionmaker[AsyncSession]:
    # expire_on_commit=False keeps ORM objects usable after commit
    return async_sessionmaker(
        bind=get_engine(),
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@asynccontextmanager
async def session_scope() -> AsyncGenerator[AsyncSession, None]:
    """One transaction: commits on exit, rolls back on error."""
    async with get_sessionmaker()() as session:
        async with session.begin():
            yield session


async def create_tables() -> None:
    from docpipe.models.executions import Base

    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def check_db_health() -> dict:
    """Round-trip a trivial query; backs the /ready probe and the startup check."""
    try:
        async with get_engine().connect() as conn:
            await conn.execute(text("SELECT 1"))
        return {"status": "ok"}
    except Exception as exc:
        logger.error("DB health check failed: %s", exc)
        return {"status": "error", "detail": str(exc)}


async def dispose_engine() -> None:
    if get_engine.cache_info().currsize:
        await get_engine().dispose()
