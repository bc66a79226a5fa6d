# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""PostgreSQL async adapter using psycopg3 with connection pooling."""

from __future__ import annotations

import re
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

from .base import DbAdapter, TransactionScope

if TYPE_CHECKING:
    from collections.abc import Sequence

_PLACEHOLDER_RE = re.compile(r"(?<!:):([a-zA-Z_][a-zA-Z0-9_]*)")


def _convert_placeholders(query: str) -> str:
    """Convert :name placeholders to %(name)s for psycopg.

    Uses negative lookbehind to preserve PostgreSQL :: cast operators.
    """
    return _PLACEHOLDER_RE.sub(r"%(\1)s", query)


class PostgresTransaction(TransactionScope):
    """Statements bound to one pooled connection inside conn.transaction()."""

    def __init__(self, conn: Any):
        self.conn = conn

    async def execute(self, query: str, params: dict[str, Any] | None = None) -> int:
        async with self.conn.cursor() as cur:
            await cur.execute(_convert_placeholders(query), params or {})
            return cur.rowcount

    async def fetch_one(
        self, query: str, params: dict[str, Any] | None = None
    ) -> dict[str, Any] | None:
        from psycopg.rows import dict_row

        async with self.conn.cursor(row_factory=dict_row) as cur:
            await cur.execute(_convert_placeholders(query), params or {})
            return await cur.fetchone()

    async def fetch_all(
        self, query: str, params: dict[str, Any] | None = None
    ) -> list[dict[str, Any]]:
        from psycopg.rows import dict_row

        async with self.conn.cursor(row_factory=dict_row) as cur:
            await cur.execute(_convert_placeholders(query), params or {})
            return await cur.fetchall()


class PostgresAdapter(DbAdapter):
    """PostgreSQL async adapter using psycopg3 with connection pooling.

    Converts :name placeholders to %(name)s for psycopg compatibility.
    """

    def pk_column(self, name: str) -> str:
        """Return SQL definition for autoincrement primary key column (PostgreSQL)."""
        return f'"{name}" SERIAL PRIMARY KEY'

    def __init__(self, dsn: str, pool_size: int = 10):
        self.dsn = dsn
        self.pool_size = pool_size
        self._pool: Any = None

        try:
            import psycopg  # noqa: F401
        except ImportError as e:
            raise ImportError(
                "PostgreSQL support requires psycopg. "
                "Install with: pip install campaign-mailer[postgresql]"
            ) from e

    def _sql_name(self, name: str) -> str:
        """Quote identifier for PostgreSQL (handles reserved words like 'user')."""
        return f'"{name}"'

    async def connect(self) -> None:
        """Establish connection pool."""
        from psycopg_pool import AsyncConnectionPool

        self._pool = AsyncConnectionPool(
            self.dsn,
            min_size=1,
            max_size=self.pool_size,
            open=False,
        )
        await self._pool.open()

    async def close(self) -> None:
        """Close connection pool."""
        if self._pool:
            await self._pool.close()
            self._pool = None

    async def execute(self, query: str, params: dict[str, Any] | None = None) -> int:
        """Execute query, return affected row count."""
        query = _convert_placeholders(query)
        async with self._pool.connection() as conn, conn.cursor() as cur:
            await cur.execute(query, params or {})
            await conn.commit()
            return cur.rowcount

    async def fetch_one(
        self, query: str, params: dict[str, Any] | None = None
    ) -> dict[str, Any] | None:
        """Execute query, return single row as dict or None."""
        from psycopg.rows import dict_row

        query = _convert_placeholders(query)
        async with self._pool.connection() as conn:
            async with conn.cursor(row_factory=dict_row) as cur:
                await cur.execute(query, params or {})
                return await cur.fetchone()

    async def fetch_all(
        self, query: str, params: dict[str, Any] | None = None
    ) -> list[dict[str, Any]]:
        """Execute query, return all rows as list of dicts."""
        from psycopg.rows import dict_row

        query = _convert_placeholders(query)
        async with self._pool.connection() as conn:
            async with conn.cursor(row_factory=dict_row) as cur:
                await cur.execute(query, params or {})
                return await cur.fetchall()

    async def upsert(
        self,
        table: str,
        data: dict[str, Any],
        conflict_columns: Sequence[str],
        update_extras: Sequence[str] | None = None,
    ) -> int:
        """Insert or update using PostgreSQL ON CONFLICT DO UPDATE."""
        columns = list(data.keys())
        placeholders = ", ".join(f"%({c})s" for c in columns)
        col_list = ", ".join(self._sql_name(c) for c in columns)
        conflict_cols = ", ".join(self._sql_name(c) for c in conflict_columns)
        update_parts = [
            f"{self._sql_name(c)} = EXCLUDED.{self._sql_name(c)}"
            for c in columns
            if c not in conflict_columns
        ]
        if update_extras:
            update_parts.extend(update_extras)
        if not update_parts:
            return await self.insert_or_ignore(table, data, conflict_columns)
        update_cols = ", ".join(update_parts)

        query = f"""
            INSERT INTO {table} ({col_list}) VALUES ({placeholders})
            ON CONFLICT ({conflict_cols}) DO UPDATE SET {update_cols}
        """
        async with self._pool.connection() as conn, conn.cursor() as cur:
            await cur.execute(query, data)
            await conn.commit()
            return cur.rowcount

    async def insert_returning_id(self, table: str, data: dict[str, Any], pk: str = "id") -> int:
        """Insert a row using RETURNING to get the generated key."""
        cols = ", ".join(self._sql_name(c) for c in data)
        values = ", ".join(f":{c}" for c in data)
        row = await self.fetch_one(
            f"INSERT INTO {table} ({cols}) VALUES ({values}) RETURNING {self._sql_name(pk)}",
            data,
        )
        return int(row[pk]) if row else 0

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[PostgresTransaction]:
        """Run statements on one pooled connection inside conn.transaction()."""
        async with self._pool.connection() as conn:
            async with conn.transaction():
                yield PostgresTransaction(conn)
