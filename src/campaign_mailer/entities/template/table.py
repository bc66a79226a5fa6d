# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Email templates referenced by campaigns."""

from __future__ import annotations

from typing import Any

from ...sql import Integer, String, Table, Timestamp


class TemplatesTable(Table):
    name = "templates"

    def configure(self) -> None:
        c = self.columns
        c.column("id", Integer, primary_key=True)
        c.column("tenant_id", String, nullable=False).relation("tenants", sql=True)
        c.column("name", String, nullable=False)
        c.column("html", String, nullable=False)
        c.column("created_at", Timestamp, default="CURRENT_TIMESTAMP")

    async def add(self, tenant_id: str, name: str, html: str) -> int:
        return await self.insert_returning_id({"tenant_id": tenant_id, "name": name, "html": html})

    async def get(self, template_id: int) -> dict[str, Any] | None:
        return await self.select_one(where={"id": template_id})

    async def list_for_tenant(self, tenant_id: str) -> list[dict[str, Any]]:
        return await self.select(
            columns=["id", "tenant_id", "name", "created_at"],
            where={"tenant_id": tenant_id},
            order_by="name",
        )

    async def purge_for_tenant(self, tenant_id: str) -> int:
        return await self.delete(where={"tenant_id": tenant_id})
