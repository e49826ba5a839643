"""Database connection and session management."""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from embedpipe.config import GeneralSettings
from embedpipe.storage.models import FIND_SEMANTIC_NEIGHBORS_SQL, Base

logger = logging.getLogger(__name__)


class Database:
    """Owns the engine and session factory for one process.

    Construct once at startup and pass it to the components that need it.
    The connection pool is the only shared resource in the pipeline.
    """

    def __init__(self, settings: GeneralSettings, echo: bool = False):
        self.engine: AsyncEngine = create_async_engine(
            settings.db_url,
            echo=echo,
            pool_size=10,
            max_overflow=20,
            pool_pre_ping=True,
            connect_args={
                "server_settings": {"statement_timeout": str(settings.db_statement_timeout_ms)},
            },
        )
        self._session_factory = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """Yield a session; roll back on error and always close.

        Callers commit explicitly.
        """
        session = self._session_factory()
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()

    async def init_schema(self) -> None:
        """Create the vector extension, tables and the neighbor-lookup function."""
        async with self.engine.begin() as conn:
            await conn.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))
            await conn.run_sync(Base.metadata.create_all)
            await conn.execute(text(FIND_SEMANTIC_NEIGHBORS_SQL))
        logger.info("Database schema ready")

    async def close(self) -> None:
        await self.engine.dispose()
