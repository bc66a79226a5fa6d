# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Contact <-> Tag junction table."""

from __future__ import annotations

from collections import defaultdict
from typing import Any

from ...sql import Integer, Table


class ContactTagsTable(Table):
    """Many-to-many links between contacts and tags."""

    name = "contact_tags"

    def configure(self) -> None:
        c = self.columns
        c.column("id", Integer, primary_key=True)
        c.column("contact_id", Integer, nullable=False).relation("contacts", sql=True)
        c.column("tag_id", Integer, nullable=False).relation("tags", sql=True)
        c.unique("contact_id", "tag_id")
        c.index("tag_id")

    async def assign(self, contact_id: int, tag_id: int) -> bool:
        """Link a tag to a contact. Returns False if already linked.

        No tenant check here; callers go through CampaignDb.assign_tag().
        """
        inserted = await self.db.adapter.insert_or_ignore(
            self.name,
            {"contact_id": contact_id, "tag_id": tag_id},
            ["contact_id", "tag_id"],
        )
        return inserted > 0

    async def unassign(self, contact_id: int, tag_id: int) -> bool:
        return await self.delete(where={"contact_id": contact_id, "tag_id": tag_id}) > 0

    async def tag_ids_for_contact(self, contact_id: int) -> list[int]:
        rows = await self.select(columns=["tag_id"], where={"contact_id": contact_id}, order_by="tag_id")
        return [row["tag_id"] for row in rows]

    async def tags_by_contact(self, tenant_id: str) -> dict[int, set[int]]:
        """Map contact id -> set of tag ids for every tagged contact of a tenant."""
        rows = await self.fetch_all(
            """
            SELECT ct.contact_id, ct.tag_id
            FROM contact_tags ct
            JOIN contacts c ON c.id = ct.contact_id
            WHERE c.tenant_id = :tenant_id
            """,
            {"tenant_id": tenant_id},
        )
        result: dict[int, set[int]] = defaultdict(set)
        for row in rows:
            result[row["contact_id"]].add(row["tag_id"])
        return dict(result)

    async def purge_for_contact(self, contact_id: int) -> int:
        return await self.delete(where={"contact_id": contact_id})

    async def purge_for_tag(self, tag_id: int) -> int:
        return await self.delete(where={"tag_id": tag_id})

    async def purge_for_tenant(self, tenant_id: str) -> int:
        params: dict[str, Any] = {"tenant_id": tenant_id}
        return await self.execute(
            """
            DELETE FROM contact_tags
            WHERE contact_id IN (SELECT id FROM contacts WHERE tenant_id = :tenant_id)
            """,
            params,
        )
