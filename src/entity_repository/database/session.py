from functools import lru_cache
from typing import AsyncGenerator

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    create_async_engine,
    async_sessionmaker,
    AsyncSession,
)

from entity_repository.config import get_settings


@lru_cache()
def get_engine() -> AsyncEngine:
    """Create the process-wide AsyncEngine from settings (once)."""
    settings = get_settings()
    return create_async_engine(
        settings.DATABASE_URL,
        echo=settings.SQLALCHEMY_ECHO,
        pool_pre_ping=True,              # Enables connection health checks
    )


@lru_cache()
def get_sessionmaker() -> async_sessionmaker[AsyncSession]:
    """
    Session factory bound to the default engine.

    expire_on_commit=False keeps loaded attribute values after commit, so the
    original values used for dirty detection stay available to repositories.
    """
    return async_sessionmaker(
        bind=get_engine(),
        class_=AsyncSession,
        expire_on_commit=False,
    )


async def get_async_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield a session and close it afterwards.

    Usage:
        async for session in get_async_session():
            repo = ArticleRepository(session)
    """
    async with get_sessionmaker()() as session:
        yield session
