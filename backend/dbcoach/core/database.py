"""
DB Coach - Database Connection
==============================

Async SQLAlchemy setup for the saved-conversation store.

The store only needs one table (`conversations`), created on startup
by init_db(). SQLite is the default; an in-memory URL keeps a single
shared connection so the table outlives the connection that made it.
"""

from typing import Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import StaticPool

from dbcoach.core.config import settings


class Base(DeclarativeBase):
    """Declarative base for conversation store tables."""
    pass


# ==========================================================================
# Engine Setup
# ==========================================================================

def is_memory_url(url: str) -> bool:
    return url.startswith("sqlite") and (":memory:" in url or url.rstrip("/").endswith(":"))


def create_engine(url: Optional[str] = None) -> AsyncEngine:
    """Create the async engine behind the conversation store."""
    url = url or str(settings.DATABASE_URL)

    if is_memory_url(url):
        return create_async_engine(
            url,
            echo=settings.DATABASE_ECHO,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    # SQLite doesn't support pool_size/max_overflow
    if url.startswith("sqlite"):
        return create_async_engine(
            url,
            echo=settings.DATABASE_ECHO,
            connect_args={"check_same_thread": False},
        )
    return create_async_engine(
        url,
        pool_size=settings.DATABASE_POOL_SIZE,
        max_overflow=settings.DATABASE_MAX_OVERFLOW,
        echo=settings.DATABASE_ECHO,
        pool_pre_ping=True,
    )


def create_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """
    Session factory handed to ConversationStore.

    Objects stay usable after commit so saved conversations can be
    returned straight to the API layer.
    """
    return async_sessionmaker(
        bind=bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )


engine = create_engine()
AsyncSessionLocal = create_session_factory(engine)


# ==========================================================================
# Lifecycle
# ==========================================================================

async def init_db(bind: Optional[AsyncEngine] = None) -> None:
    """Create the conversation store tables if they do not exist."""
    # Registers Conversation on Base.metadata
    from dbcoach.core import models  # noqa: F401

    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    await engine.dispose()
