# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""SqlDb: adapter owner and table registry."""

from __future__ import annotations

from contextlib import AbstractAsyncContextManager
from typing import Any

from .adapters import DbAdapter, TransactionScope, get_adapter
from .table import Table


class SqlDb:
    """Async database manager with table registration.

    Example:
        db = SqlDb("/data/campaigns.db")
        db.add_table(ContactsTable)
        await db.connect()
        await db.check_structure()
        contacts = await db.table("contacts").select(where={"tenant_id": "acme"})
    """

    def __init__(self, connection_string: str) -> None:
        self.connection_string = connection_string
        self.adapter: DbAdapter = get_adapter(connection_string)
        self.tables: dict[str, Table] = {}

    @property
    def is_postgres(self) -> bool:
        return type(self.adapter).__name__ == "PostgresAdapter"

    def add_table(self, table_class: type[Table]) -> Table:
        """Instantiate and register a table manager."""
        instance = table_class(self)
        self.tables[instance.name] = instance
        return instance

    def table(self, name: str) -> Table:
        """Return a registered table manager by name."""
        if name not in self.tables:
            raise KeyError(f"Table '{name}' is not registered")
        return self.tables[name]

    async def connect(self) -> None:
        await self.adapter.connect()

    async def close(self) -> None:
        await self.adapter.close()

    async def check_structure(self) -> None:
        """Create every registered table, then add missing columns."""
        for table in self.tables.values():
            await table.create_schema()
        for table in self.tables.values():
            await table.sync_schema()

    def transaction(self) -> AbstractAsyncContextManager[TransactionScope]:
        return self.adapter.transaction()

    async def fetch_all(
        self, query: str, params: dict[str, Any] | None = None
    ) -> list[dict[str, Any]]:
        return await self.adapter.fetch_all(query, params)


__all__ = ["SqlDb"]
