"""SQLAlchemy 2.x async database setup (asyncpg driver).

Each request gets one ``AsyncSession`` from ``get_session``. FastAPI caches
the dependency per request, so ``SqlContactRepository`` and ``SqlActivityLog``
share that session and a merge (contact updates, deletes and the audit entry)
commits or rolls back as a single unit. Connection settings come from
``DB_*`` environment variables.
"""

from __future__ import annotations

from typing import AsyncIterator

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from .config import settings


engine: AsyncEngine = create_async_engine(
    settings.db.url,
    echo=settings.db.echo,
    pool_size=settings.db.pool_size,
    max_overflow=settings.db.max_overflow,
)

AsyncSessionMaker = async_sessionmaker(bind=engine, expire_on_commit=False, class_=AsyncSession)


async def get_session() -> AsyncIterator[AsyncSession]:
    """Per-request session shared by the contact repository and activity log.

    Committing is left to ``SqlContactRepository.unit_of_work``; the session
    is closed when the request ends.
    """

    async with AsyncSessionMaker() as session:
        yield session
