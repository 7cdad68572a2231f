from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Optional

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from reeru.utils.logger import logger

# Base class for models
Base = declarative_base()


class Database:
    """
    Owns the async engine and session factory.

    Built once by the application lifespan (or the standalone worker) and
    handed to whoever needs sessions; open() before use, close() on shutdown.
    """

    def __init__(self, url: str, echo: bool = False):
        self.url = url
        self.echo = echo
        self._engine: Optional[AsyncEngine] = None
        self._sessionmaker: Optional[async_sessionmaker] = None

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            raise RuntimeError("Database is not open")
        return self._engine

    async def open(self) -> None:
        """Create the engine and all tables"""
        if self._engine is not None:
            return

        options = {"echo": self.echo, "future": True}
        if self.url.startswith("sqlite"):
            self._ensure_sqlite_dir()
            # Writers wait on each other instead of failing with "database is locked"
            options["connect_args"] = {"timeout": 30}
        else:
            options["pool_pre_ping"] = True  # Detect and recycle stale/broken connections
            options["pool_recycle"] = 300

        self._engine = create_async_engine(self.url, **options)
        self._sessionmaker = async_sessionmaker(self._engine, class_=AsyncSession, expire_on_commit=False)

        # Import models to register them with Base
        from reeru.models import clip_job, token_account, user_short  # noqa: F401

        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

        logger.info("database.opened", extra={"backend": self._engine.dialect.name})

    async def close(self) -> None:
        if self._engine is None:
            return
        await self._engine.dispose()
        self._engine = None
        self._sessionmaker = None
        logger.info("database.closed")

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        if self._sessionmaker is None:
            raise RuntimeError("Database is not open")
        async with self._sessionmaker() as session:
            try:
                yield session
            except Exception:
                await session.rollback()
                raise

    def _ensure_sqlite_dir(self) -> None:
        path = self.url.split("///", 1)[-1]
        if path and path != ":memory:":
            Path(path).parent.mkdir(parents=True, exist_ok=True)


# Dependency for FastAPI routes
async def get_db(request: Request) -> AsyncIterator[AsyncSession]:
    database: Database = request.app.state.db
    async with database.session() as session:
        yield session
