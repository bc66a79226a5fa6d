# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Campaigns table manager.

Lifecycle status lives in the ``status`` column and every transition is a
conditional UPDATE (``WHERE status IN (...)``), so two workers racing on the
same campaign cannot both win. Delivery counters are only ever modified by
``counter = counter + 1`` statements.

JSON-encoded fields: included_tag_ids, excluded_tag_ids, excluded_contact_ids,
status_filters (stored as sorted lists, exposed as lists).
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any

from ...sql import Integer, String, Table, Timestamp

DRAFT = "draft"
SCHEDULED = "scheduled"
SENDING = "sending"
SENT = "sent"
FAILED = "failed"

COUNTER_FIELDS = (
    "sent_count",
    "delivered_count",
    "opened_count",
    "clicked_count",
    "bounced_count",
    "complained_count",
)

CONTENT_FIELDS = (
    "title",
    "description",
    "subject",
    "message",
    "template_id",
    "body_html",
    "sender_email",
    "sender_name",
    "language",
    "included_tag_ids",
    "excluded_tag_ids",
    "excluded_contact_ids",
    "status_filters",
)

SET_FIELDS = ("included_tag_ids", "excluded_tag_ids", "excluded_contact_ids", "status_filters")


class CampaignsTable(Table):
    """Campaigns table: one newsletter send per row."""

    name = "campaigns"

    def configure(self) -> None:
        c = self.columns
        c.column("id", Integer, primary_key=True)
        c.column("tenant_id", String, nullable=False).relation("tenants", sql=True)
        c.column("title", String)
        c.column("description", String)
        c.column("subject", String)
        c.column("message", String)  # plain-text part
        c.column("template_id", Integer)
        c.column("body_html", String)
        c.column("sender_email", String)
        c.column("sender_name", String)
        c.column("language", String, default="en")
        c.column("included_tag_ids", String, json_encoded=True)
        c.column("excluded_tag_ids", String, json_encoded=True)
        c.column("excluded_contact_ids", String, json_encoded=True)
        c.column("status_filters", String, json_encoded=True)
        c.column("status", String, nullable=False, default=DRAFT)
        c.column("scheduled_for", Integer)
        c.column("started_ts", Integer)
        c.column("sent_ts", Integer)
        c.column("finished_ts", Integer)
        c.column("failure_reason", String)
        c.column("recipient_count", Integer, nullable=False, default=0)
        for field in COUNTER_FIELDS:
            c.column(field, Integer, nullable=False, default=0)
        c.column("created_at", Timestamp, default="CURRENT_TIMESTAMP")
        c.column("updated_at", Timestamp, default="CURRENT_TIMESTAMP")
        c.index("tenant_id", "status")
        c.index("status", "scheduled_for")

    @staticmethod
    def _normalise_sets(values: dict[str, Any]) -> dict[str, Any]:
        result = dict(values)
        for field in SET_FIELDS:
            if field in result:
                result[field] = sorted(set(result[field] or []))
        return result

    async def add(self, campaign: dict[str, Any]) -> int:
        """Insert a new draft campaign and return its id."""
        record = {k: campaign.get(k) for k in CONTENT_FIELDS if campaign.get(k) is not None}
        for field in SET_FIELDS:
            record.setdefault(field, [])
        record["tenant_id"] = campaign["tenant_id"]
        record["status"] = DRAFT
        return await self.insert_returning_id(self._normalise_sets(record))

    async def get(self, campaign_id: int) -> dict[str, Any] | None:
        return await self.select_one(where={"id": campaign_id})

    async def list_for_tenant(self, tenant_id: str, status: str | None = None) -> list[dict[str, Any]]:
        where: dict[str, Any] = {"tenant_id": tenant_id}
        if status:
            where["status"] = status
        return await self.select(where=where, order_by="id")

    async def list_by_status(self, status: str) -> list[dict[str, Any]]:
        return await self.select(where={"status": status}, order_by="id")

    async def due_scheduled(self, now_ts: int) -> list[dict[str, Any]]:
        """Scheduled campaigns whose time has come, oldest first."""
        return await self.fetch_all(
            """
            SELECT * FROM campaigns
            WHERE status = :status AND scheduled_for IS NOT NULL AND scheduled_for <= :now_ts
            ORDER BY scheduled_for, id
            """,
            {"status": SCHEDULED, "now_ts": now_ts},
        )

    async def update_draft(self, campaign_id: int, values: dict[str, Any]) -> bool:
        """Apply content/audience edits. Only a draft row is touched."""
        values = self._normalise_sets({k: v for k, v in values.items() if k in CONTENT_FIELDS})
        if not values:
            return False
        encoded = self.encode(values)
        set_parts = [f"{k} = :val_{k}" for k in encoded]
        set_parts.append("updated_at = CURRENT_TIMESTAMP")
        params = {f"val_{k}": v for k, v in encoded.items()}
        params.update({"campaign_id": campaign_id, "draft": DRAFT})
        rowcount = await self.execute(
            f"UPDATE campaigns SET {', '.join(set_parts)} WHERE id = :campaign_id AND status = :draft",
            params,
        )
        return rowcount > 0

    async def transition(
        self,
        campaign_id: int,
        from_statuses: Iterable[str],
        to_status: str,
        values: dict[str, Any] | None = None,
    ) -> bool:
        """Conditionally move a campaign to ``to_status``.

        Returns True only for the caller whose UPDATE matched a row in one
        of ``from_statuses``; a concurrent claim sees False.
        """
        sources = list(from_statuses)
        params: dict[str, Any] = {"campaign_id": campaign_id, "to_status": to_status}
        params.update({f"from_{i}": s for i, s in enumerate(sources)})
        set_parts = ["status = :to_status", "updated_at = CURRENT_TIMESTAMP"]
        for key, value in (values or {}).items():
            set_parts.append(f"{key} = :val_{key}")
            params[f"val_{key}"] = value
        placeholders = ", ".join(f":from_{i}" for i in range(len(sources)))
        rowcount = await self.execute(
            f"""
            UPDATE campaigns SET {', '.join(set_parts)}
            WHERE id = :campaign_id AND status IN ({placeholders})
            """,
            params,
        )
        return rowcount > 0

    async def set_recipient_count(self, campaign_id: int, count: int) -> None:
        await self.execute(
            "UPDATE campaigns SET recipient_count = :count WHERE id = :campaign_id",
            {"count": count, "campaign_id": campaign_id},
        )

    async def remove_unsent(self, campaign_id: int) -> bool:
        """Delete a campaign that never started sending."""
        rowcount = await self.execute(
            "DELETE FROM campaigns WHERE id = :campaign_id AND status IN (:draft, :scheduled)",
            {"campaign_id": campaign_id, "draft": DRAFT, "scheduled": SCHEDULED},
        )
        return rowcount > 0

    async def purge_for_tenant(self, tenant_id: str) -> int:
        return await self.delete(where={"tenant_id": tenant_id})


def counter_increment_sql(field: str) -> str:
    """UPDATE statement bumping one delivery counter by 1 (param: campaign_id)."""
    if field not in COUNTER_FIELDS:
        raise ValueError(f"unknown campaign counter: {field}")
    return f"UPDATE campaigns SET {field} = {field} + 1 WHERE id = :campaign_id"
