# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Tags table manager."""

from __future__ import annotations

from typing import Any

from ...errors import DuplicateTagError, TagNotFound, TagProtectedError
from ...sql import Integer, String, Table, Timestamp

DEFAULT_TAG_COLOR = "bg-blue-100 text-blue-800"


class TagsTable(Table):
    """Tags table: labels for audience targeting, unique by name per tenant.

    System tags (is_system = 1) cannot be deleted by users.
    """

    name = "tags"

    def configure(self) -> None:
        c = self.columns
        c.column("id", Integer, primary_key=True)
        c.column("tenant_id", String, nullable=False).relation("tenants", sql=True)
        c.column("name", String, nullable=False)
        c.column("color", String, default=DEFAULT_TAG_COLOR)
        c.column("is_system", Integer, default=0)
        c.column("created_at", Timestamp, default="CURRENT_TIMESTAMP")
        c.unique("tenant_id", "name")

    async def add(
        self,
        tenant_id: str,
        name: str,
        color: str | None = None,
        is_system: bool = False,
    ) -> int:
        """Insert a tag and return its id.

        Raises:
            DuplicateTagError: the tenant already has a tag with this name.
        """
        name = name.strip()
        inserted = await self.adapter.insert_or_ignore(
            self.name,
            {
                "tenant_id": tenant_id,
                "name": name,
                "color": color or DEFAULT_TAG_COLOR,
                "is_system": 1 if is_system else 0,
            },
            ["tenant_id", "name"],
        )
        if not inserted:
            raise DuplicateTagError(name, tenant_id)
        tag = await self.get_by_name(tenant_id, name)
        return tag["id"]

    async def get(self, tag_id: int) -> dict[str, Any] | None:
        tag = await self.select_one(where={"id": tag_id})
        return self._decode_system(tag) if tag else None

    async def get_by_name(self, tenant_id: str, name: str) -> dict[str, Any] | None:
        tag = await self.select_one(where={"tenant_id": tenant_id, "name": name.strip()})
        return self._decode_system(tag) if tag else None

    async def list_for_tenant(self, tenant_id: str) -> list[dict[str, Any]]:
        rows = await self.select(where={"tenant_id": tenant_id}, order_by="name")
        return [self._decode_system(row) for row in rows]

    async def update_fields(self, tag_id: int, name: str | None = None, color: str | None = None) -> bool:
        """Rename and/or recolour a tag. Returns False if the tag does not exist.

        Raises:
            DuplicateTagError: another tag of the same tenant has ``name``.
        """
        name = name.strip() if name else None
        if not name:
            if not color:
                return False
            return await self.update({"color": color}, {"id": tag_id}) > 0
        set_sql = "name = :name, color = :color" if color else "name = :name"
        # One statement, so a concurrent rename cannot slip past the name check.
        rowcount = await self.execute(
            f"""
            UPDATE tags SET {set_sql}
            WHERE id = :tag_id
              AND NOT EXISTS (
                  SELECT 1 FROM tags other
                  WHERE other.tenant_id = tags.tenant_id AND other.name = :name AND other.id <> :tag_id
              )
            """,
            {"tag_id": tag_id, "name": name, "color": color},
        )
        if rowcount:
            return True
        tag = await self.get(tag_id)
        if not tag:
            return False
        raise DuplicateTagError(name, tag["tenant_id"])

    async def require_for_tenant(self, tag_id: int, tenant_id: str) -> dict[str, Any]:
        """Load a tag of ``tenant_id``; other tenants' tags count as missing."""
        tag = await self.get(tag_id)
        if not tag or tag["tenant_id"] != tenant_id:
            raise TagNotFound(tag_id, tenant_id)
        return tag

    async def ids_for_tenant(self, tenant_id: str) -> set[int]:
        rows = await self.select(columns=["id"], where={"tenant_id": tenant_id})
        return {row["id"] for row in rows}

    async def remove(self, tag_id: int) -> bool:
        """Delete a user tag. Junction rows are removed by CampaignDb.delete_tag()."""
        tag = await self.get(tag_id)
        if not tag:
            return False
        if tag["is_system"]:
            raise TagProtectedError(f"tag '{tag['name']}' is a system tag")
        return await self.delete(where={"id": tag_id}) > 0

    async def purge_for_tenant(self, tenant_id: str) -> int:
        return await self.delete(where={"tenant_id": tenant_id})

    @staticmethod
    def _decode_system(tag: dict[str, Any]) -> dict[str, Any]:
        tag["is_system"] = bool(tag.get("is_system"))
        return tag
