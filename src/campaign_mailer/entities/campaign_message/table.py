# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Campaign messages: the per-recipient dispatch marker.

One row exists per (campaign, recipient email) that the transport accepted.
The row doubles as the idempotency key for resumed dispatch and as the
anchor for delivery events (looked up by provider message id).

``contact_id`` is a plain back-reference, not a foreign key: message history
survives contact deletion.
"""

from __future__ import annotations

from typing import Any

from ...sql import Integer, String, Table

HARD_BOUNCE = "hard_bounce"
COMPLAINT = "complaint"

INSERT_SQL = """
    INSERT INTO campaign_messages (campaign_id, message_id, recipient_email, contact_id, sent_ts)
    VALUES (:campaign_id, :message_id, :recipient_email, :contact_id, :sent_ts)
    ON CONFLICT DO NOTHING
"""


class CampaignMessagesTable(Table):
    name = "campaign_messages"

    def configure(self) -> None:
        c = self.columns
        c.column("id", Integer, primary_key=True)
        c.column("campaign_id", Integer, nullable=False).relation("campaigns", sql=True)
        c.column("message_id", String, nullable=False)
        c.column("recipient_email", String, nullable=False)
        c.column("contact_id", Integer)
        c.column("sent_ts", Integer, nullable=False)
        c.column("suppression_flag", String)  # hard_bounce | complaint
        c.column("flagged_ts", Integer)
        c.unique("message_id")
        c.unique("campaign_id", "recipient_email")

    async def get_by_message_id(self, message_id: str) -> dict[str, Any] | None:
        return await self.select_one(where={"message_id": message_id})

    async def list_for_campaign(self, campaign_id: int) -> list[dict[str, Any]]:
        return await self.select(where={"campaign_id": campaign_id}, order_by="id")

    async def sent_emails(self, campaign_id: int) -> set[str]:
        rows = await self.select(columns=["recipient_email"], where={"campaign_id": campaign_id})
        return {row["recipient_email"] for row in rows}

    async def count_for_campaign(self, campaign_id: int) -> int:
        return await self.count({"campaign_id": campaign_id})

    async def flagged_recipients(self, tenant_id: str) -> list[dict[str, Any]]:
        """Recipients flagged by hard bounce or complaint, newest first."""
        return await self.fetch_all(
            """
            SELECT m.recipient_email, m.contact_id, m.suppression_flag, m.flagged_ts,
                   m.campaign_id, m.message_id
            FROM campaign_messages m
            JOIN campaigns c ON c.id = m.campaign_id
            WHERE c.tenant_id = :tenant_id AND m.suppression_flag IS NOT NULL
            ORDER BY m.flagged_ts DESC, m.id DESC
            """,
            {"tenant_id": tenant_id},
        )
