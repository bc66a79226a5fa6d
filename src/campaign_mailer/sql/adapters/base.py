# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Base adapter class for async database backends."""

from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import AbstractAsyncContextManager
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Sequence


class TransactionScope(ABC):
    """Connection-bound query scope handed out by DbAdapter.transaction().

    Every statement issued through the scope runs on the same connection
    and is committed together when the ``async with`` block exits cleanly.
    """

    @abstractmethod
    async def execute(self, query: str, params: dict[str, Any] | None = None) -> int:
        """Execute query inside the transaction, return affected row count."""
        ...

    @abstractmethod
    async def fetch_one(
        self, query: str, params: dict[str, Any] | None = None
    ) -> dict[str, Any] | None:
        ...

    @abstractmethod
    async def fetch_all(
        self, query: str, params: dict[str, Any] | None = None
    ) -> list[dict[str, Any]]:
        ...


class DbAdapter(ABC):
    """Abstract base class for async database adapters.

    All queries use :name placeholders (supported by both SQLite and PostgreSQL).
    """

    def pk_column(self, name: str) -> str:
        """Return SQL definition for autoincrement primary key column."""
        return f'"{name}" INTEGER PRIMARY KEY AUTOINCREMENT'

    def _placeholder(self, name: str) -> str:
        return f":{name}"

    def _sql_name(self, name: str) -> str:
        return name

    @abstractmethod
    async def connect(self) -> None:
        """Establish database connection."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Close database connection."""
        ...

    @abstractmethod
    async def execute(self, query: str, params: dict[str, Any] | None = None) -> int:
        """Execute query, return affected row count."""
        ...

    @abstractmethod
    async def fetch_one(
        self, query: str, params: dict[str, Any] | None = None
    ) -> dict[str, Any] | None:
        """Execute query, return single row as dict or None."""
        ...

    @abstractmethod
    async def fetch_all(
        self, query: str, params: dict[str, Any] | None = None
    ) -> list[dict[str, Any]]:
        """Execute query, return all rows as list of dicts."""
        ...

    @abstractmethod
    async def upsert(
        self,
        table: str,
        data: dict[str, Any],
        conflict_columns: Sequence[str],
        update_extras: Sequence[str] | None = None,
    ) -> int:
        """Insert or update row on conflict.

        Args:
            table: Table name.
            data: Column-value pairs to insert/update.
            conflict_columns: Columns that define uniqueness (typically PK).
            update_extras: Extra SQL expressions for UPDATE (e.g., "updated_at = CURRENT_TIMESTAMP").

        Returns:
            Affected row count.
        """
        ...

    @abstractmethod
    async def insert_returning_id(self, table: str, data: dict[str, Any], pk: str = "id") -> int:
        """Insert a row and return its autoincrement primary key."""
        ...

    @abstractmethod
    def transaction(self) -> AbstractAsyncContextManager[TransactionScope]:
        """Open a transaction: commit on clean exit, rollback on exception.

        Usage:
            async with adapter.transaction() as tx:
                await tx.execute("UPDATE ...", {...})
                await tx.execute("INSERT ...", {...})
        """
        ...

    # -------------------------------------------------------------------------
    # Generic CRUD built on the primitives above
    # -------------------------------------------------------------------------

    def _where_sql(self, where: dict[str, Any] | None) -> str:
        if not where:
            return ""
        conditions = [f"{self._sql_name(k)} = {self._placeholder(k)}" for k in where]
        return " WHERE " + " AND ".join(conditions)

    async def insert(self, table: str, data: dict[str, Any]) -> int:
        """Insert a row, return affected row count."""
        cols = ", ".join(self._sql_name(c) for c in data)
        values = ", ".join(self._placeholder(c) for c in data)
        return await self.execute(f"INSERT INTO {table} ({cols}) VALUES ({values})", data)

    async def insert_or_ignore(
        self, table: str, data: dict[str, Any], conflict_columns: Sequence[str]
    ) -> int:
        """Insert a row unless it violates the given uniqueness; return 1 if inserted."""
        cols = ", ".join(self._sql_name(c) for c in data)
        values = ", ".join(self._placeholder(c) for c in data)
        conflict = ", ".join(self._sql_name(c) for c in conflict_columns)
        return await self.execute(
            f"INSERT INTO {table} ({cols}) VALUES ({values}) ON CONFLICT ({conflict}) DO NOTHING",
            data,
        )

    async def select(
        self,
        table: str,
        columns: list[str] | None = None,
        where: dict[str, Any] | None = None,
        order_by: str | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        cols_sql = ", ".join(self._sql_name(c) for c in columns) if columns else "*"
        query = f"SELECT {cols_sql} FROM {table}{self._where_sql(where)}"
        if order_by:
            query += f" ORDER BY {order_by}"
        if limit is not None:
            query += f" LIMIT {int(limit)}"
        return await self.fetch_all(query, where)

    async def select_one(
        self,
        table: str,
        columns: list[str] | None = None,
        where: dict[str, Any] | None = None,
    ) -> dict[str, Any] | None:
        cols_sql = ", ".join(self._sql_name(c) for c in columns) if columns else "*"
        return await self.fetch_one(
            f"SELECT {cols_sql} FROM {table}{self._where_sql(where)} LIMIT 1", where
        )

    async def update(self, table: str, values: dict[str, Any], where: dict[str, Any]) -> int:
        set_sql = ", ".join(f"{self._sql_name(k)} = {self._placeholder('v_' + k)}" for k in values)
        conditions = " AND ".join(
            f"{self._sql_name(k)} = {self._placeholder('w_' + k)}" for k in where
        )
        params = {f"v_{k}": v for k, v in values.items()}
        params.update({f"w_{k}": v for k, v in where.items()})
        return await self.execute(f"UPDATE {table} SET {set_sql} WHERE {conditions}", params)

    async def delete(self, table: str, where: dict[str, Any]) -> int:
        return await self.execute(f"DELETE FROM {table}{self._where_sql(where)}", where)

    async def exists(self, table: str, where: dict[str, Any]) -> bool:
        row = await self.fetch_one(
            f"SELECT 1 AS found FROM {table}{self._where_sql(where)} LIMIT 1", where
        )
        return row is not None

    async def count(self, table: str, where: dict[str, Any] | None = None) -> int:
        row = await self.fetch_one(f"SELECT COUNT(*) AS cnt FROM {table}{self._where_sql(where)}", where)
        return int(row["cnt"]) if row else 0
