"""Database Session Manager - async connection pool with automatic rollback and health checks.

Invariants:
    - Every session auto-rolls-back on exception (no partial commits leak)
    - Connection pool uses pool_pre_ping for stale connection detection
    - IntegrityError becomes ConstraintViolationError; every other SQLAlchemy
      exception becomes DatabaseError (core/errors.py)
    - BoxOfficeError raised inside a session still rolls it back, unchanged

Design Decisions:
    - No module-level instance: the FastAPI lifespan builds one and keeps it on app.state
    - expire_on_commit=False: prevents lazy-load issues in async context
    - An existing engine can be adopted so tests share one in-memory SQLite
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from sqlalchemy.ext.asyncio import (
    AsyncEngine, AsyncSession, create_async_engine, async_sessionmaker,
)
from sqlalchemy.exc import (
    IntegrityError, OperationalError, DBAPIError, SQLAlchemyError,
)
from sqlalchemy import text

from boxoffice.core.errors import (
    BoxOfficeError, ConstraintViolationError, DatabaseError,
)

logger = logging.getLogger(__name__)


class DatabaseSessionManager:
    """Manages async database sessions with pooling, rollback, and health checks."""

    def __init__(
        self,
        database_url: str | None = None,
        pool_size: int = 20,
        max_overflow: int = 10,
        engine: AsyncEngine | None = None,
    ):
        if engine is None:
            if database_url is None:
                raise ValueError("database_url or engine is required")
            pool_kwargs = {}
            if not database_url.startswith("sqlite"):
                pool_kwargs = {
                    "pool_size": pool_size,
                    "max_overflow": max_overflow,
                    "pool_recycle": 3600,
                }
            engine = create_async_engine(
                database_url, pool_pre_ping=True, **pool_kwargs,
            )
        self.engine = engine
        self._session_factory = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """Provide session with auto-rollback on exception."""
        session = self._session_factory()
        try:
            yield session
        except BoxOfficeError:
            await session.rollback()
            raise
        except IntegrityError as e:
            await session.rollback()
            logger.error(f"DB integrity error: {e.orig}")
            raise ConstraintViolationError(_constraint_name(e))
        except OperationalError as e:
            await session.rollback()
            logger.error(f"DB operational error: {e}")
            raise DatabaseError("Connection or operational error", "execute")
        except DBAPIError as e:
            await session.rollback()
            logger.error(f"DB driver error: {e}")
            raise DatabaseError("Database driver error", "query")
        except SQLAlchemyError as e:
            await session.rollback()
            logger.error(f"SQLAlchemy error: {e}")
            raise DatabaseError("Database operation failed", "unknown")
        finally:
            await session.close()

    async def health_check(self) -> bool:
        """Check database connectivity (for readiness probes)."""
        try:
            async with self.session() as db:
                await db.execute(text("SELECT 1"))
            return True
        except Exception as e:
            logger.error(f"DB health check failed: {e}")
            return False

    async def dispose(self) -> None:
        await self.engine.dispose()


def _constraint_name(error: IntegrityError) -> str:
    """Best-effort constraint name from the driver message."""
    orig = getattr(error, "orig", None)
    name = getattr(orig, "constraint_name", None)
    if name:
        return name
    return str(orig or error).splitlines()[0][:200]
