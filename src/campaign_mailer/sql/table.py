# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Table base class for the campaign store.

Each entity subclasses :class:`Table`, declares its columns in
``configure()`` and adds its own queries on top of the generic CRUD below.
Columns flagged ``json_encoded`` (tag id sets, event metadata) are stored
as JSON text and come back as Python values.
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

from .column import Columns

if TYPE_CHECKING:
    from .sqldb import SqlDb

Row = dict[str, Any]


class Table:
    """Async manager for one table.

    Attributes:
        name: Table name in database.
        db: Owning SqlDb.
        columns: Column definitions filled by ``configure()``.
    """

    name: str

    def __init__(self, db: SqlDb) -> None:
        if not getattr(self, "name", None):
            raise ValueError(f"{type(self).__name__} must define 'name'")
        self.db = db
        self.columns = Columns()
        self.configure()

    def configure(self) -> None:
        """Declare columns; subclasses override."""

    @property
    def adapter(self):
        return self.db.adapter

    # ------------------------------------------------------------------ schema
    def create_table_sql(self) -> str:
        """CREATE TABLE IF NOT EXISTS with foreign keys and unique constraints."""
        parts = [
            self.adapter.pk_column(col.name) if col.primary_key and col.type_ == "INTEGER" else col.to_sql()
            for col in self.columns.values()
        ]
        for col in self.columns.values():
            if not (col.relation_sql and col.relation_table):
                continue
            fk = f'FOREIGN KEY ("{col.name}") REFERENCES {col.relation_table}("{col.relation_pk}")'
            parts.append(f"{fk} ON DELETE {col.on_delete}" if col.on_delete else fk)
        parts.extend(
            "UNIQUE (" + ", ".join(f'"{n}"' for n in names) + ")"
            for names in self.columns.unique_constraints
        )
        body = ",\n    ".join(parts)
        return f"CREATE TABLE IF NOT EXISTS {self.name} (\n    {body}\n)"

    def create_indexes_sql(self) -> list[str]:
        return [
            f"CREATE INDEX IF NOT EXISTS idx_{self.name}_{'_'.join(names)} "
            f"ON {self.name} (" + ", ".join(f'"{n}"' for n in names) + ")"
            for names in self.columns.indexes
        ]

    async def create_schema(self) -> None:
        await self.adapter.execute(self.create_table_sql())
        for statement in self.create_indexes_sql():
            await self.adapter.execute(statement)

    async def sync_schema(self) -> None:
        """Add columns declared in code but missing from an older database."""
        present = await self._present_columns()
        for col in self.columns.values():
            if not col.primary_key and col.name not in present:
                await self.adapter.execute(f"ALTER TABLE {self.name} ADD COLUMN {col.to_sql()}")

    async def _present_columns(self) -> set[str]:
        if self.db.is_postgres:
            query = "SELECT column_name AS name FROM information_schema.columns WHERE table_name = :t"
            rows = await self.adapter.fetch_all(query, {"t": self.name})
        else:
            rows = await self.adapter.fetch_all(f"PRAGMA table_info({self.name})")
        return {row["name"] for row in rows}

    # -------------------------------------------------------------------- json
    def encode(self, data: Row) -> Row:
        encoded = dict(data)
        for name in self.columns.json_columns():
            if encoded.get(name) is not None:
                encoded[name] = json.dumps(encoded[name])
        return encoded

    def decode(self, row: Row | None) -> Row | None:
        if row is None:
            return None
        decoded = dict(row)
        for name in self.columns.json_columns():
            if isinstance(decoded.get(name), str):
                decoded[name] = json.loads(decoded[name])
        return decoded

    def decode_all(self, rows: list[Row]) -> list[Row]:
        return [self.decode(row) for row in rows]

    # -------------------------------------------------------------------- crud
    async def insert(self, data: Row) -> int:
        return await self.adapter.insert(self.name, self.encode(data))

    async def insert_returning_id(self, data: Row) -> int:
        """Insert a row and return its generated integer id."""
        return await self.adapter.insert_returning_id(self.name, self.encode(data))

    async def select(
        self,
        columns: list[str] | None = None,
        where: Row | None = None,
        order_by: str | None = None,
        limit: int | None = None,
    ) -> list[Row]:
        return self.decode_all(await self.adapter.select(self.name, columns, where, order_by, limit))

    async def select_one(self, columns: list[str] | None = None, where: Row | None = None) -> Row | None:
        return self.decode(await self.adapter.select_one(self.name, columns, where))

    async def update(self, values: Row, where: Row) -> int:
        """Update matching rows; returns the affected row count."""
        return await self.adapter.update(self.name, self.encode(values), where)

    async def delete(self, where: Row) -> int:
        return await self.adapter.delete(self.name, where)

    async def exists(self, where: Row) -> bool:
        return await self.adapter.exists(self.name, where)

    async def count(self, where: Row | None = None) -> int:
        return await self.adapter.count(self.name, where)

    async def upsert(
        self,
        data: Row,
        conflict_columns: list[str],
        update_extras: list[str] | None = None,
    ) -> int:
        """Insert, or update the non-conflict columns when the key exists.

        ``update_extras`` lists raw SQL assignments appended to the update
        clause, e.g. ``"updated_at = CURRENT_TIMESTAMP"``.
        """
        return await self.adapter.upsert(self.name, self.encode(data), conflict_columns, update_extras)

    # --------------------------------------------------------------------- raw
    async def fetch_one(self, query: str, params: Row | None = None) -> Row | None:
        return self.decode(await self.adapter.fetch_one(query, params))

    async def fetch_all(self, query: str, params: Row | None = None) -> list[Row]:
        return self.decode_all(await self.adapter.fetch_all(query, params))

    async def execute(self, query: str, params: Row | None = None) -> int:
        """Run a statement; returns the affected row count."""
        return await self.adapter.execute(query, params)


__all__ = ["Row", "Table"]
