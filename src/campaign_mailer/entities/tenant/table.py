# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Tenants table manager: plan tier, bonus grant and per-cycle usage."""

from __future__ import annotations

from typing import Any

from ...sql import Integer, String, Table, Timestamp

UPDATABLE_FIELDS = ("name", "plan_tier", "timezone", "active")

CONSUME_QUOTA_SQL = (
    "UPDATE tenants SET emails_sent_this_cycle = emails_sent_this_cycle + 1 WHERE id = :tenant_id"
)


class TenantsTable(Table):
    """Tenants table: one row per website/customer account.

    ``emails_sent_this_cycle`` is the counter every concurrent campaign of
    the tenant contends on. It only changes through atomic ``x = x + 1``
    updates issued inside the dispatch transaction, or through reset_cycle().
    Boolean field: active (stored as INTEGER 0/1).
    """

    name = "tenants"

    def configure(self) -> None:
        c = self.columns
        c.column("id", String, primary_key=True)
        c.column("name", String)
        c.column("plan_tier", String)
        c.column("timezone", String, default="UTC")  # IANA name
        c.column("bonus_emails", Integer, default=0)
        c.column("bonus_emails_expiry", Integer)  # epoch seconds
        c.column("emails_sent_this_cycle", Integer, nullable=False, default=0)
        c.column("cycle_started_ts", Integer)
        c.column("active", Integer, default=1)
        c.column("created_at", Timestamp, default="CURRENT_TIMESTAMP")
        c.column("updated_at", Timestamp, default="CURRENT_TIMESTAMP")

    async def add(self, tenant: dict[str, Any]) -> None:
        """Insert or update a tenant. Usage counters are never overwritten."""
        await self.upsert(
            {
                "id": tenant["id"],
                "name": tenant.get("name"),
                "plan_tier": tenant.get("plan_tier"),
                "timezone": tenant.get("timezone") or "UTC",
                "active": 1 if tenant.get("active", True) else 0,
            },
            conflict_columns=["id"],
            update_extras=["updated_at = CURRENT_TIMESTAMP"],
        )

    async def get(self, tenant_id: str) -> dict[str, Any] | None:
        """Fetch a tenant by ID."""
        tenant = await self.select_one(where={"id": tenant_id})
        if not tenant:
            return None
        return self._decode_active(tenant)

    async def list_all(self, active_only: bool = False) -> list[dict[str, Any]]:
        """Return all tenants, optionally filtered by active status."""
        if active_only:
            rows = await self.fetch_all("SELECT * FROM tenants WHERE active = 1 ORDER BY id")
        else:
            rows = await self.select(order_by="id")
        return [self._decode_active(row) for row in rows]

    async def update_fields(self, tenant_id: str, updates: dict[str, Any]) -> bool:
        """Update descriptive fields. Returns True if row was updated."""
        values: dict[str, Any] = {}
        for key, value in updates.items():
            if key == "active":
                values["active"] = 1 if value else 0
            elif key in UPDATABLE_FIELDS:
                values[key] = value
        if not values:
            return False

        set_parts = [f"{k} = :val_{k}" for k in values]
        set_parts.append("updated_at = CURRENT_TIMESTAMP")
        params = {f"val_{k}": v for k, v in values.items()}
        params["tenant_id"] = tenant_id
        rowcount = await self.execute(
            f"UPDATE tenants SET {', '.join(set_parts)} WHERE id = :tenant_id",
            params,
        )
        return rowcount > 0

    async def remove(self, tenant_id: str) -> bool:
        """Delete a tenant row. Cascading is handled by CampaignDb.delete_tenant()."""
        rowcount = await self.delete(where={"id": tenant_id})
        return rowcount > 0

    async def grant_bonus(self, tenant_id: str, amount: int, expiry_ts: int) -> bool:
        """Store an admin bonus grant, replacing any previous one."""
        rowcount = await self.execute(
            """
            UPDATE tenants
            SET bonus_emails = :amount, bonus_emails_expiry = :expiry,
                updated_at = CURRENT_TIMESTAMP
            WHERE id = :tenant_id
            """,
            {"amount": max(0, int(amount)), "expiry": int(expiry_ts), "tenant_id": tenant_id},
        )
        return rowcount > 0

    async def reset_cycle(self, tenant_id: str, now_ts: int) -> bool:
        """Start a new billing cycle: zero the per-cycle sent counter."""
        rowcount = await self.execute(
            """
            UPDATE tenants
            SET emails_sent_this_cycle = 0, cycle_started_ts = :now_ts,
                updated_at = CURRENT_TIMESTAMP
            WHERE id = :tenant_id
            """,
            {"now_ts": now_ts, "tenant_id": tenant_id},
        )
        return rowcount > 0

    async def sent_this_cycle(self, tenant_id: str) -> int:
        row = await self.fetch_one(
            "SELECT emails_sent_this_cycle FROM tenants WHERE id = :tenant_id",
            {"tenant_id": tenant_id},
        )
        return int(row["emails_sent_this_cycle"] or 0) if row else 0

    @staticmethod
    def _decode_active(tenant: dict[str, Any]) -> dict[str, Any]:
        tenant["active"] = bool(tenant.get("active", 1))
        return tenant
