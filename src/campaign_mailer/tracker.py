# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Delivery tracker: applies provider events to campaign messages.

Events are keyed by provider message id. For each event:

- no campaign_messages row with that id: the event is logged and
  discarded, nothing is created;
- the (message_id, event_type) pair is inserted into message_events; only
  the first insert bumps the campaign counter, replays are ignored;
- a hard bounce or a complaint sets ``suppression_flag`` on the message
  row once. The send itself stays a success.

parse_ses_notification() converts Amazon SES event publishing records,
bare or wrapped in an SNS envelope, into DeliveryEvent values.
"""

from __future__ import annotations

import json
import time
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from .campaign_db import CampaignDb
from .entities.campaign import counter_increment_sql
from .entities.campaign_message import COMPLAINT, HARD_BOUNCE
from .entities.message_event.table import INSERT_SQL as INSERT_EVENT_SQL
from .entities.message_event.table import MessageEventTable
from .logger import get_logger
from .prometheus import CampaignMetrics

logger = get_logger("tracker")

DELIVERED = "delivered"
BOUNCED = "bounced"
COMPLAINED = "complained"
OPENED = "opened"
CLICKED = "clicked"

EVENT_COUNTERS = {
    DELIVERED: "delivered_count",
    BOUNCED: "bounced_count",
    COMPLAINED: "complained_count",
    OPENED: "opened_count",
    CLICKED: "clicked_count",
}

EVENT_ALIASES = {
    "delivery": DELIVERED,
    "bounce": BOUNCED,
    "complaint": COMPLAINED,
    "open": OPENED,
    "click": CLICKED,
}

HARD_BOUNCE_TYPES = {"hard", "permanent"}

# Outcomes of DeliveryTracker.ingest()
COUNTED = "counted"
DUPLICATE = "duplicate"
UNKNOWN_MESSAGE = "unknown_message"
UNKNOWN_TYPE = "unknown_type"

FLAG_SQL = """
    UPDATE campaign_messages SET suppression_flag = :flag, flagged_ts = :flagged_ts
    WHERE id = :id AND suppression_flag IS NULL
"""


def normalise_event_type(value: str | None) -> str | None:
    """Canonical event type, or None when not recognised."""
    if not value:
        return None
    key = value.strip().lower()
    if key in EVENT_COUNTERS:
        return key
    return EVENT_ALIASES.get(key)


@dataclass
class DeliveryEvent:
    message_id: str
    event_type: str
    event_ts: int
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def is_hard_bounce(self) -> bool:
        if normalise_event_type(self.event_type) != BOUNCED:
            return False
        bounce_type = str(self.metadata.get("bounce_type") or "hard").lower()
        return bounce_type in HARD_BOUNCE_TYPES


def suppression_flag_for(event: DeliveryEvent) -> str | None:
    event_type = normalise_event_type(event.event_type)
    if event_type == COMPLAINED:
        return COMPLAINT
    if event.is_hard_bounce:
        return HARD_BOUNCE
    return None


def _iso_to_epoch(value: str | None) -> int | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return int(parsed.timestamp())


def parse_ses_notification(payload: Mapping[str, Any], received_ts: int | None = None) -> list[DeliveryEvent]:
    """Turn an SES event record (or SNS notification) into DeliveryEvents.

    Returns an empty list for SNS subscription confirmations and for
    records without a message id. Unknown event types are passed through
    so the tracker can log them.
    """
    record: Mapping[str, Any] = payload
    if payload.get("Type") == "SubscriptionConfirmation":
        logger.info("SNS subscription confirmation received: %s", payload.get("SubscribeURL"))
        return []
    if payload.get("Type") == "Notification" and isinstance(payload.get("Message"), str):
        try:
            record = json.loads(payload["Message"])
        except ValueError:
            logger.warning("SNS notification with undecodable Message discarded")
            return []

    mail = record.get("mail") or {}
    message_id = mail.get("messageId")
    if not message_id:
        logger.warning("SES record without mail.messageId discarded")
        return []

    raw_type = record.get("eventType") or record.get("notificationType") or ""
    event_type = normalise_event_type(raw_type) or raw_type
    fallback_ts = _iso_to_epoch(mail.get("timestamp")) or received_ts or int(time.time())

    metadata: dict[str, Any] = {}
    header_id = (mail.get("commonHeaders") or {}).get("messageId")
    if header_id:
        metadata["header_message_id"] = header_id.strip().strip("<>")

    detail: Mapping[str, Any] = {}
    if event_type == BOUNCED:
        detail = record.get("bounce") or {}
        ses_type = (detail.get("bounceType") or "").lower()
        metadata["bounce_type"] = "hard" if ses_type == "permanent" else "soft" if ses_type else "hard"
        if detail.get("bounceSubType"):
            metadata["bounce_sub_type"] = detail["bounceSubType"]
    elif event_type == COMPLAINED:
        detail = record.get("complaint") or {}
        if detail.get("complaintFeedbackType"):
            metadata["feedback_type"] = detail["complaintFeedbackType"]
    elif event_type == DELIVERED:
        detail = record.get("delivery") or {}
    elif event_type == OPENED:
        detail = record.get("open") or {}
        if detail.get("userAgent"):
            metadata["user_agent"] = detail["userAgent"]
    elif event_type == CLICKED:
        detail = record.get("click") or {}
        if detail.get("link"):
            metadata["link"] = detail["link"]

    event_ts = _iso_to_epoch(detail.get("timestamp")) or fallback_ts
    return [DeliveryEvent(message_id=message_id, event_type=event_type, event_ts=event_ts, metadata=metadata)]


class DeliveryTracker:
    """Reconciles delivery events against dispatched campaign messages."""

    def __init__(
        self,
        db: CampaignDb,
        metrics: CampaignMetrics | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.db = db
        self.metrics = metrics or CampaignMetrics()
        self._clock = clock

    async def _find_message(self, event: DeliveryEvent) -> dict[str, Any] | None:
        message = await self.db.campaign_messages.get_by_message_id(event.message_id)
        header_id = event.metadata.get("header_message_id")
        if message is None and header_id and header_id != event.message_id:
            message = await self.db.campaign_messages.get_by_message_id(header_id)
        return message

    async def ingest(self, event: DeliveryEvent) -> str:
        """Apply one event. Returns counted, duplicate, unknown_message or unknown_type."""
        event_type = normalise_event_type(event.event_type)
        if event_type is None:
            logger.warning("Unknown delivery event type %r for message %s", event.event_type, event.message_id)
            return UNKNOWN_TYPE

        message = await self._find_message(event)
        if message is None:
            logger.warning("Delivery event %s for unknown message %s discarded", event_type, event.message_id)
            self.metrics.inc_unknown_event()
            return UNKNOWN_MESSAGE

        received_ts = int(self._clock())
        flag = suppression_flag_for(event)
        async with self.db.transaction() as tx:
            inserted = await tx.execute(
                INSERT_EVENT_SQL,
                MessageEventTable.insert_params(
                    message["message_id"], event_type, event.event_ts, received_ts, event.metadata or None
                ),
            )
            if inserted:
                await tx.execute(counter_increment_sql(EVENT_COUNTERS[event_type]), {"campaign_id": message["campaign_id"]})
                if flag:
                    await tx.execute(FLAG_SQL, {"flag": flag, "flagged_ts": event.event_ts, "id": message["id"]})

        if not inserted:
            logger.debug("Duplicate %s event for message %s ignored", event_type, message["message_id"])
            return DUPLICATE
        self.metrics.inc_delivery_event(event_type)
        if flag:
            logger.info("Message %s to %s flagged: %s", message["message_id"], message["recipient_email"], flag)
        return COUNTED

    async def ingest_many(self, events: Iterable[DeliveryEvent]) -> dict[str, int]:
        """Apply events in order and count the outcomes."""
        summary = {COUNTED: 0, DUPLICATE: 0, UNKNOWN_MESSAGE: 0, UNKNOWN_TYPE: 0}
        for event in events:
            outcome = await self.ingest(event)
            summary[outcome] += 1
        return summary

    async def ingest_ses(self, payload: Mapping[str, Any]) -> dict[str, int]:
        return await self.ingest_many(parse_ses_notification(payload, int(self._clock())))

    async def flagged_recipients(self, tenant_id: str) -> list[dict[str, Any]]:
        """Hard-bounced and complaining recipients, for an external suppression list."""
        return await self.db.campaign_messages.flagged_recipients(tenant_id)
