# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Column definitions used by Table.configure().

Example:
    def configure(self) -> None:
        c = self.columns
        c.column("id", Integer, primary_key=True)
        c.column("tenant_id", String, nullable=False).relation("tenants", sql=True)
        c.column("included_tag_ids", String, json_encoded=True)
        c.unique("tenant_id", "email")
        c.index("tenant_id", "status")
"""

from __future__ import annotations

from collections.abc import Iterator
from typing import Any

Integer = "INTEGER"
String = "TEXT"
Timestamp = "TIMESTAMP"


class Column:
    """Single column definition.

    Attributes:
        name: Column name.
        type_: SQL type (Integer, String, Timestamp).
        primary_key: Whether the column is the primary key.
        nullable: Whether NULL is allowed.
        default: SQL default (literal value or SQL keyword like CURRENT_TIMESTAMP).
        json_encoded: Whether values are stored as JSON text.
    """

    def __init__(
        self,
        name: str,
        type_: str,
        *,
        primary_key: bool = False,
        nullable: bool = True,
        default: Any = None,
        json_encoded: bool = False,
    ) -> None:
        self.name = name
        self.type_ = type_
        self.primary_key = primary_key
        self.nullable = nullable
        self.default = default
        self.json_encoded = json_encoded
        self.relation_table: str | None = None
        self.relation_pk = "id"
        self.relation_sql = False
        self.on_delete: str | None = None

    def relation(
        self, table: str, pk: str = "id", sql: bool = False, on_delete: str | None = None
    ) -> Column:
        """Declare a reference to another table. With sql=True a FOREIGN KEY is emitted."""
        self.relation_table = table
        self.relation_pk = pk
        self.relation_sql = sql
        self.on_delete = on_delete
        return self

    def _default_sql(self) -> str:
        value = self.default
        if isinstance(value, str):
            if value.upper() in ("CURRENT_TIMESTAMP", "CURRENT_DATE"):
                return value.upper()
            escaped = value.replace("'", "''")
            return f"'{escaped}'"
        if isinstance(value, bool):
            return "1" if value else "0"
        return str(value)

    def to_sql(self) -> str:
        """Return the column definition fragment for CREATE/ALTER TABLE."""
        parts = [f'"{self.name}"', self.type_]
        if self.primary_key:
            parts.append("PRIMARY KEY")
        elif not self.nullable:
            parts.append("NOT NULL")
        if self.default is not None:
            parts.append(f"DEFAULT {self._default_sql()}")
        return " ".join(parts)


class Columns:
    """Ordered collection of Column objects plus table-level constraints."""

    def __init__(self) -> None:
        self._columns: dict[str, Column] = {}
        self.unique_constraints: list[tuple[str, ...]] = []
        self.indexes: list[tuple[str, ...]] = []

    def column(self, name: str, type_: str, **kwargs: Any) -> Column:
        col = Column(name, type_, **kwargs)
        self._columns[name] = col
        return col

    def unique(self, *names: str) -> None:
        """Add a UNIQUE constraint spanning the given columns."""
        self.unique_constraints.append(tuple(names))

    def index(self, *names: str) -> None:
        """Add a secondary index, created by SqlDb.check_structure()."""
        self.indexes.append(tuple(names))

    def get(self, name: str) -> Column | None:
        return self._columns.get(name)

    def values(self) -> Iterator[Column]:
        return iter(self._columns.values())

    def keys(self) -> Iterator[str]:
        return iter(self._columns.keys())

    def json_columns(self) -> list[str]:
        return [c.name for c in self._columns.values() if c.json_encoded]

    def __contains__(self, name: object) -> bool:
        return name in self._columns

    def __len__(self) -> int:
        return len(self._columns)


__all__ = ["Column", "Columns", "Integer", "String", "Timestamp"]
