"""Async database handle shared by the storage components."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncConnection, create_async_engine
from sqlmodel import SQLModel

from ..errors import ConfigurationError, ConnectivityError, SchemaMissingError
from . import models  # noqa: F401 - registers the tables on SQLModel.metadata
from .models import TABLES

_DRIVER_PREFIXES = {
    "sqlite://": "sqlite+aiosqlite://",
    "postgres://": "postgresql+asyncpg://",
    "postgresql://": "postgresql+asyncpg://",
}


def normalize_database_url(database_url: str) -> str:
    """Map plain SQLite/PostgreSQL URLs onto their asyncio drivers."""
    if database_url.startswith(("sqlite+aiosqlite://", "postgresql+asyncpg://")):
        return database_url
    for prefix, replacement in _DRIVER_PREFIXES.items():
        if database_url.startswith(prefix):
            return replacement + database_url[len(prefix):]
    raise ConfigurationError(f"Unsupported database backend: {database_url}")


class Database:
    """Connection pool and transaction helper.

    Construct one per process and hand it to every component that needs the
    store.
    """

    def __init__(self, database_url: str, echo: bool = False) -> None:
        self.url = normalize_database_url(database_url)
        connect_args = {}
        if self.url.startswith("sqlite"):
            connect_args = {"check_same_thread": False, "timeout": 30}
        self.engine = create_async_engine(
            self.url, echo=echo, future=True, connect_args=connect_args
        )

    @property
    def dialect_name(self) -> str:
        return self.engine.dialect.name

    async def init_db(self) -> None:
        async with self.transaction() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)

    async def verify_schema(self) -> None:
        """Raise :class:`SchemaMissingError` unless every table answers."""
        missing: list[str] = []
        async with self.connect() as conn:
            for table in TABLES:
                try:
                    await conn.execute(text(f'SELECT 1 FROM "{table}" LIMIT 1'))
                except DBAPIError:
                    missing.append(table)
                    await conn.rollback()
        if missing:
            raise SchemaMissingError(missing)

    async def _open(self) -> AsyncConnection:
        try:
            return await self.engine.connect()
        except (OperationalError, InterfaceError, OSError) as exc:
            raise ConnectivityError(f"Cannot connect to {self.engine.url!r}: {exc}") from exc

    @asynccontextmanager
    async def connect(self) -> AsyncIterator[AsyncConnection]:
        """Connection whose statements are committed on exit."""
        conn = await self._open()
        try:
            yield conn
            await conn.commit()
        finally:
            await conn.close()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncConnection]:
        """Connection inside a transaction, rolled back if the block raises."""
        conn = await self._open()
        try:
            async with conn.begin():
                yield conn
        finally:
            await conn.close()

    async def dispose(self) -> None:
        await self.engine.dispose()
