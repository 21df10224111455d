"""Async Session Factory - async DB sessions outside the FastAPI lifespan.

Invariants:
    - Meant for scripts, seeding and test fixtures
    - expire_on_commit=False, same as DatabaseSessionManager

Design Decisions:
    - Separate from infrastructure/database.py: no error mapping, no pool tuning,
      callers own the engine
"""

from sqlalchemy.ext.asyncio import (
    AsyncEngine, AsyncSession, create_async_engine, async_sessionmaker,
)


def create_session_factory(
    database_url: str | None = None, engine: AsyncEngine | None = None,
) -> async_sessionmaker[AsyncSession]:
    """Create an async session factory for a URL or an existing engine."""
    if engine is None:
        if database_url is None:
            raise ValueError("database_url or engine is required")
        engine = create_async_engine(database_url, echo=False)
    return async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False,
    )
