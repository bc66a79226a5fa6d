# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""SQLite async adapter using aiosqlite."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

import aiosqlite

from .base import DbAdapter, TransactionScope

if TYPE_CHECKING:
    from collections.abc import Sequence

# Seconds a writer waits for the database lock before failing.
BUSY_TIMEOUT = 30.0


def _rows_to_dicts(cursor: aiosqlite.Cursor, rows: Sequence[Any]) -> list[dict[str, Any]]:
    cols = [c[0] for c in cursor.description]
    return [dict(zip(cols, row, strict=True)) for row in rows]


class SqliteTransaction(TransactionScope):
    """Statements bound to one aiosqlite connection inside BEGIN IMMEDIATE."""

    def __init__(self, conn: aiosqlite.Connection):
        self.conn = conn

    async def execute(self, query: str, params: dict[str, Any] | None = None) -> int:
        cursor = await self.conn.execute(query, params or {})
        return cursor.rowcount

    async def fetch_one(
        self, query: str, params: dict[str, Any] | None = None
    ) -> dict[str, Any] | None:
        async with self.conn.execute(query, params or {}) as cursor:
            row = await cursor.fetchone()
            if row is None:
                return None
            return _rows_to_dicts(cursor, [row])[0]

    async def fetch_all(
        self, query: str, params: dict[str, Any] | None = None
    ) -> list[dict[str, Any]]:
        async with self.conn.execute(query, params or {}) as cursor:
            rows = await cursor.fetchall()
            return _rows_to_dicts(cursor, rows)


class SqliteAdapter(DbAdapter):
    """SQLite async adapter. Opens connection per-operation for thread safety."""

    def __init__(self, db_path: str):
        """Initialize SQLite adapter.

        Args:
            db_path: Path to SQLite file, or ":memory:" for in-memory DB.
        """
        self.db_path = db_path or ":memory:"

    async def connect(self) -> None:
        """SQLite connections are opened per-operation, this is a no-op."""
        pass

    async def close(self) -> None:
        """SQLite connections are closed per-operation, this is a no-op."""
        pass

    async def execute(self, query: str, params: dict[str, Any] | None = None) -> int:
        """Execute query, return affected row count."""
        async with aiosqlite.connect(self.db_path, timeout=BUSY_TIMEOUT) as db:
            cursor = await db.execute(query, params or {})
            await db.commit()
            return cursor.rowcount

    async def fetch_one(
        self, query: str, params: dict[str, Any] | None = None
    ) -> dict[str, Any] | None:
        """Execute query, return single row as dict or None."""
        async with aiosqlite.connect(self.db_path, timeout=BUSY_TIMEOUT) as db:
            async with db.execute(query, params or {}) as cursor:
                row = await cursor.fetchone()
                if row is None:
                    return None
                return _rows_to_dicts(cursor, [row])[0]

    async def fetch_all(
        self, query: str, params: dict[str, Any] | None = None
    ) -> list[dict[str, Any]]:
        """Execute query, return all rows as list of dicts."""
        async with aiosqlite.connect(self.db_path, timeout=BUSY_TIMEOUT) as db:
            async with db.execute(query, params or {}) as cursor:
                rows = await cursor.fetchall()
                return _rows_to_dicts(cursor, rows)

    async def upsert(
        self,
        table: str,
        data: dict[str, Any],
        conflict_columns: Sequence[str],
        update_extras: Sequence[str] | None = None,
    ) -> int:
        """Insert or update using SQLite ON CONFLICT DO UPDATE."""
        columns = list(data.keys())
        placeholders = ", ".join(f":{c}" for c in columns)
        col_list = ", ".join(columns)
        conflict_cols = ", ".join(conflict_columns)
        update_parts = [f"{c} = excluded.{c}" for c in columns if c not in conflict_columns]
        if update_extras:
            update_parts.extend(update_extras)
        if not update_parts:
            return await self.insert_or_ignore(table, data, conflict_columns)
        update_cols = ", ".join(update_parts)

        query = f"""
            INSERT INTO {table} ({col_list}) VALUES ({placeholders})
            ON CONFLICT ({conflict_cols}) DO UPDATE SET {update_cols}
        """
        return await self.execute(query, data)

    async def insert_returning_id(self, table: str, data: dict[str, Any], pk: str = "id") -> int:
        """Insert a row and read lastrowid from the same connection."""
        cols = ", ".join(data)
        values = ", ".join(f":{c}" for c in data)
        async with aiosqlite.connect(self.db_path, timeout=BUSY_TIMEOUT) as db:
            cursor = await db.execute(f"INSERT INTO {table} ({cols}) VALUES ({values})", data)
            await db.commit()
            return int(cursor.lastrowid or 0)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[SqliteTransaction]:
        """Run statements on one connection under BEGIN IMMEDIATE.

        IMMEDIATE takes the write lock up front, so concurrent writers
        serialize on the database instead of failing at COMMIT time.
        """
        async with aiosqlite.connect(
            self.db_path, timeout=BUSY_TIMEOUT, isolation_level=None
        ) as db:
            await db.execute("BEGIN IMMEDIATE")
            try:
                yield SqliteTransaction(db)
            except BaseException:
                await db.execute("ROLLBACK")
                raise
            await db.execute("COMMIT")
