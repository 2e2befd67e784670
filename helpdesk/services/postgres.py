from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any

import asyncpg


@dataclass(slots=True)
class PostgresDatabase:
    """Owns the process-wide asyncpg pool."""

    dsn: str
    min_size: int = 1
    max_size: int = 10
    command_timeout: float | None = None
    _pool: asyncpg.Pool | None = None

    async def get_pool(self) -> asyncpg.Pool:
        if self._pool is None:
            self._pool = await asyncpg.create_pool(
                dsn=self.dsn,
                min_size=self.min_size,
                max_size=self.max_size,
                command_timeout=self.command_timeout,
            )
        return self._pool

    async def test_connection(self) -> bool:
        pool = await self.get_pool()
        async with pool.acquire() as connection:
            await connection.execute("SELECT 1")
        return True

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None


@asynccontextmanager
async def connection_scope(pool: Any, connection: Any = None) -> AsyncIterator[Any]:
    """Yield ``connection`` when given, otherwise a connection acquired from ``pool``.

    Lets repository methods join a caller's transaction or run standalone.
    """

    if connection is not None:
        yield connection
        return
    async with pool.acquire() as acquired:
        yield acquired


@asynccontextmanager
async def transaction_scope(pool: Any) -> AsyncIterator[Any]:
    """Acquire a connection and hold a transaction open on it."""

    async with pool.acquire() as connection:
        async with connection.transaction():
            yield connection
