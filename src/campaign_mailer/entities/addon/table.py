# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Add-on subscriptions mirrored from the billing system."""

from __future__ import annotations

from typing import Any

from ...sql import Integer, String, Table, Timestamp


class AddonSubscriptionsTable(Table):
    """Add-on subscriptions: one row per billing subscription.

    ``id`` is the billing system's subscription identifier. ``access_until``
    (epoch seconds) is the end of the paid period; a cancelled add-on keeps
    counting until then.
    """

    name = "addon_subscriptions"

    def configure(self) -> None:
        c = self.columns
        c.column("id", String, primary_key=True)
        c.column("tenant_id", String, nullable=False).relation("tenants", sql=True)
        c.column("product_id", String, nullable=False)
        c.column("status", String, nullable=False, default="active")
        c.column("access_until", Integer)
        c.column("created_at", Timestamp, default="CURRENT_TIMESTAMP")
        c.column("updated_at", Timestamp, default="CURRENT_TIMESTAMP")
        c.index("tenant_id")

    async def add(self, subscription: dict[str, Any]) -> None:
        await self.upsert(
            {
                "id": subscription["id"],
                "tenant_id": subscription["tenant_id"],
                "product_id": subscription["product_id"],
                "status": subscription.get("status") or "active",
                "access_until": subscription.get("access_until"),
            },
            conflict_columns=["id"],
            update_extras=["updated_at = CURRENT_TIMESTAMP"],
        )

    async def list_for_tenant(self, tenant_id: str) -> list[dict[str, Any]]:
        return await self.select(where={"tenant_id": tenant_id}, order_by="id")

    async def remove(self, subscription_id: str) -> bool:
        return await self.delete(where={"id": subscription_id}) > 0

    async def purge_for_tenant(self, tenant_id: str) -> int:
        return await self.delete(where={"tenant_id": tenant_id})
