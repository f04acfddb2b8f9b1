"""Async SQLAlchemy plumbing for the persistent match cache."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from sqlalchemy import MetaData
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

logger = logging.getLogger(__name__)

NAMING_CONVENTION = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "pk": "pk_%(table_name)s",
}
SQLITE_BUSY_TIMEOUT_SECONDS = 30


class Base(DeclarativeBase):
    """Declarative base with consistent naming conventions."""

    metadata = MetaData(naming_convention=NAMING_CONVENTION)


class Database:
    """Own the async engine and hand out short-lived sessions."""

    def __init__(self, database_url: str, *, echo: bool = False):
        url = make_url(database_url)
        engine_options: dict[str, Any] = {"echo": echo}
        if url.get_backend_name() == "sqlite":
            # Concurrent cache writes from parallel lookups wait instead of failing.
            engine_options["connect_args"] = {"timeout": SQLITE_BUSY_TIMEOUT_SECONDS}
        self._url = url
        self._engine: AsyncEngine = create_async_engine(url, **engine_options)
        self.session_factory: async_sessionmaker[AsyncSession] = async_sessionmaker(
            self._engine, expire_on_commit=False
        )

    @property
    def engine(self) -> AsyncEngine:
        return self._engine

    @property
    def is_sqlite(self) -> bool:
        return self._url.get_backend_name() == "sqlite"

    async def create_all(self) -> None:
        """Create the cache tables if they do not yet exist."""

        # Registers the ORM tables on Base.metadata.
        from . import db_models  # noqa: F401

        async with self._engine.begin() as connection:
            await connection.run_sync(Base.metadata.create_all)
        logger.info(
            "Database schema ready at %s", self._url.render_as_string(hide_password=True)
        )

    async def dispose(self) -> None:
        await self._engine.dispose()

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        async with self.session_factory() as session:
            yield session
