"""
Async SQLAlchemy session factory (PostgreSQL in production, SQLite in tests).
"""

from __future__ import annotations

from typing import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from config.settings import config


def build_engine(url: str) -> AsyncEngine:
    """Create an engine; pool sizing only applies to server databases."""
    if url.startswith("sqlite"):
        if ":memory:" in url:
            return create_async_engine(url, echo=False)
        # file databases: one connection per checkout, never shared across event loops
        return create_async_engine(url, echo=False, poolclass=NullPool)
    return create_async_engine(
        url,
        echo=False,
        pool_size=10,
        max_overflow=20,
        pool_recycle=3600,
    )


engine = build_engine(config.database_url)

async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def init_db() -> None:
    """Create all tables that do not exist yet."""
    from database.models import Base

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Dependency function — use in FastAPI `Depends(get_db_session)`."""
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()
