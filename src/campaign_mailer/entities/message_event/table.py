# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Message events table manager for delivery tracking.

Each provider notification accepted for a known campaign message is
recorded once per (message_id, event_type). The unique key makes replayed
webhooks harmless: a second insert of the same pair is ignored and the
campaign counter is not bumped again.

Event types:
- delivered: provider confirmed delivery to the recipient's server
- bounced: hard or soft bounce (metadata.bounce_type)
- complained: recipient marked the message as spam
- opened: tracking pixel loaded
- clicked: tracked link followed
"""

from __future__ import annotations

import json
from typing import Any

from ...sql import Integer, String, Table

INSERT_SQL = """
    INSERT INTO message_events (message_id, event_type, event_ts, metadata, received_ts)
    VALUES (:message_id, :event_type, :event_ts, :metadata, :received_ts)
    ON CONFLICT (message_id, event_type) DO NOTHING
"""


class MessageEventTable(Table):
    """Message events table: deduplicated delivery events."""

    name = "message_events"

    def configure(self) -> None:
        c = self.columns
        c.column("id", Integer, primary_key=True)  # autoincrement
        c.column("message_id", String, nullable=False)
        c.column("event_type", String, nullable=False)
        c.column("event_ts", Integer, nullable=False)
        c.column("metadata", String, json_encoded=True)  # bounce_type, link url, ...
        c.column("received_ts", Integer)
        c.unique("message_id", "event_type")

    @staticmethod
    def insert_params(
        message_id: str,
        event_type: str,
        event_ts: int,
        received_ts: int,
        metadata: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Parameters for INSERT_SQL."""
        return {
            "message_id": message_id,
            "event_type": event_type,
            "event_ts": event_ts,
            "metadata": json.dumps(metadata) if metadata else None,
            "received_ts": received_ts,
        }

    async def list_for_message(self, message_id: str) -> list[dict[str, Any]]:
        """Events for one message in chronological order."""
        return await self.select(where={"message_id": message_id}, order_by="event_ts, id")

    async def list_for_campaign(self, campaign_id: int) -> list[dict[str, Any]]:
        return await self.fetch_all(
            """
            SELECT e.*, m.recipient_email
            FROM message_events e
            JOIN campaign_messages m ON m.message_id = e.message_id
            WHERE m.campaign_id = :campaign_id
            ORDER BY e.event_ts ASC, e.id ASC
            """,
            {"campaign_id": campaign_id},
        )
