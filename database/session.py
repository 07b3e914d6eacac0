"""
Engine, session factory and the process's default ``Store``.

Route handlers receive both through FastAPI dependencies so tests can
swap in a SQLite-backed store with ``app.dependency_overrides``.
"""

from __future__ import annotations

from typing import AsyncGenerator

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from config.settings import config
from database.store import Store

engine = create_async_engine(
    config.database_url,
    echo=False,
    pool_size=10,
    max_overflow=20,
    pool_recycle=3600,
)

async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)

default_store = Store(async_session_factory)


def get_store() -> Store:
    """Dependency — the store capability for cron / OAuth handlers."""
    return default_store


async def get_db_session(
    store: Store = Depends(get_store),
) -> AsyncGenerator[AsyncSession, None]:
    """Request-scoped session that commits when the handler returns."""
    async with store.transaction() as session:
        yield session
