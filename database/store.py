"""
Store — the privileged data-store capability handed to background jobs.

Cron and OAuth handlers act on behalf of arbitrary users, so they cannot
rely on the request's own session.  Instead they receive a ``Store``
built explicitly from a session factory.  Each unit of work opens its
own short transaction through ``Store.transaction()``.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker


class Store:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncSession]:
        """Yield a session that commits on success and rolls back on error."""
        async with self._session_factory() as session:
            try:
                yield session
                await session.commit()
            except BaseException:
                # also covers cancellation at the reconciliation deadline
                await session.rollback()
                raise

    @asynccontextmanager
    async def read(self) -> AsyncIterator[AsyncSession]:
        """Yield a session for read-only work; nothing is committed."""
        async with self._session_factory() as session:
            yield session
