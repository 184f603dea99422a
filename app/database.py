"""Database utilities for the ReelState service."""

from __future__ import annotations

from sqlalchemy import MetaData, make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Declarative base with consistent naming conventions."""

    metadata = MetaData()


class Database:
    """Thin wrapper managing the SQLAlchemy async engine and sessions."""

    def __init__(self, database_url: str, *, busy_timeout: float = 30.0):
        connect_args: dict[str, object] = {}
        if make_url(database_url).get_backend_name() == "sqlite":
            # Concurrent writers wait for the file lock instead of failing fast.
            connect_args["timeout"] = busy_timeout
        self._engine: AsyncEngine = create_async_engine(
            database_url, future=True, connect_args=connect_args
        )
        self.session_factory: async_sessionmaker[AsyncSession] = async_sessionmaker(
            self._engine, expire_on_commit=False
        )

    async def create_all(self) -> None:
        """Create database tables if they do not yet exist."""

        # Importing the models registers their tables on the shared metadata.
        from . import db_models  # noqa: F401

        async with self._engine.begin() as connection:
            await connection.run_sync(Base.metadata.create_all)

    async def dispose(self) -> None:
        """Dispose of the underlying database engine."""

        await self._engine.dispose()

