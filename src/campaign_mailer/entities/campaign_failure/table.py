# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Per-recipient send failures, kept apart from campaign_messages.

A failure row is a terminal outcome for its recipient: resumed dispatch
skips it, and it never counts towards sent_count or the tenant quota.
"""

from __future__ import annotations

from typing import Any

from ...sql import Integer, String, Table


class CampaignFailuresTable(Table):
    name = "campaign_failures"

    def configure(self) -> None:
        c = self.columns
        c.column("id", Integer, primary_key=True)
        c.column("campaign_id", Integer, nullable=False).relation("campaigns", sql=True)
        c.column("recipient_email", String, nullable=False)
        c.column("contact_id", Integer)
        c.column("error", String)
        c.column("error_code", Integer)
        c.column("attempts", Integer, default=1)
        c.column("failed_ts", Integer, nullable=False)
        c.unique("campaign_id", "recipient_email")

    async def record(
        self,
        campaign_id: int,
        recipient_email: str,
        error: str,
        failed_ts: int,
        attempts: int = 1,
        error_code: int | None = None,
        contact_id: int | None = None,
    ) -> bool:
        inserted = await self.db.adapter.insert_or_ignore(
            self.name,
            {
                "campaign_id": campaign_id,
                "recipient_email": recipient_email,
                "contact_id": contact_id,
                "error": error,
                "error_code": error_code,
                "attempts": attempts,
                "failed_ts": failed_ts,
            },
            ["campaign_id", "recipient_email"],
        )
        return inserted > 0

    async def failed_emails(self, campaign_id: int) -> set[str]:
        rows = await self.select(columns=["recipient_email"], where={"campaign_id": campaign_id})
        return {row["recipient_email"] for row in rows}

    async def list_for_campaign(self, campaign_id: int) -> list[dict[str, Any]]:
        return await self.select(where={"campaign_id": campaign_id}, order_by="id")
