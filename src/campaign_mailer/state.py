# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Campaign lifecycle: draft -> scheduled -> sending -> sent | failed.

Allowed moves::

    draft     -> scheduled   schedule() with a future time
    draft     -> sending     schedule() with no/past time ("send now")
    scheduled -> draft       unschedule() (needed before editing)
    scheduled -> sending     start_sending() once scheduled_for is reached,
                             or earlier with override=True
    sending   -> sent        mark_sent()
    sending   -> failed      mark_failed(reason)

sent and failed are final. ``scheduled_for`` is non-NULL exactly while the
campaign is ``scheduled``. Content and audience can only be changed in
``draft``. Each move is one conditional UPDATE, so concurrent callers
cannot both perform the same transition.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from .campaign_db import CampaignDb
from .errors import CampaignConfigurationError, CampaignNotFound, CampaignStateError, TagNotFound
from .logger import get_logger

logger = get_logger("state")


class CampaignStatus(str, Enum):
    DRAFT = "draft"
    SCHEDULED = "scheduled"
    SENDING = "sending"
    SENT = "sent"
    FAILED = "failed"


TRANSITIONS: dict[CampaignStatus, frozenset[CampaignStatus]] = {
    CampaignStatus.DRAFT: frozenset({CampaignStatus.SCHEDULED, CampaignStatus.SENDING}),
    CampaignStatus.SCHEDULED: frozenset({CampaignStatus.DRAFT, CampaignStatus.SENDING}),
    CampaignStatus.SENDING: frozenset({CampaignStatus.SENT, CampaignStatus.FAILED}),
    CampaignStatus.SENT: frozenset(),
    CampaignStatus.FAILED: frozenset(),
}

CANCELLABLE = frozenset({CampaignStatus.DRAFT, CampaignStatus.SCHEDULED})
TAG_FILTER_FIELDS = ("included_tag_ids", "excluded_tag_ids")


def can_transition(current: str, target: str) -> bool:
    return CampaignStatus(target) in TRANSITIONS[CampaignStatus(current)]


class CampaignStateMachine:
    """Owns every status change of a campaign row."""

    def __init__(self, db: CampaignDb):
        self.db = db

    async def get(self, campaign_id: int) -> dict[str, Any]:
        campaign = await self.db.campaigns.get(campaign_id)
        if not campaign:
            raise CampaignNotFound(campaign_id)
        return campaign

    async def create(self, tenant_id: str, data: dict[str, Any]) -> int:
        await self.db.require_tenant(tenant_id)
        await self._check_tag_ids(tenant_id, data)
        campaign_id = await self.db.campaigns.add({**data, "tenant_id": tenant_id})
        logger.info("Created campaign %s for tenant %s", campaign_id, tenant_id)
        return campaign_id

    async def edit(self, campaign_id: int, values: dict[str, Any]) -> dict[str, Any]:
        """Change content or audience of a draft campaign."""
        campaign = await self.get(campaign_id)
        if campaign["status"] != CampaignStatus.DRAFT.value:
            raise CampaignStateError(
                f"campaign {campaign_id} is {campaign['status']}; only drafts can be edited"
            )
        await self._check_tag_ids(campaign["tenant_id"], values)
        if not await self.db.campaigns.update_draft(campaign_id, values):
            # Lost a race against schedule()/send-now, or nothing editable given.
            current = await self.get(campaign_id)
            if current["status"] != CampaignStatus.DRAFT.value:
                raise CampaignStateError(
                    f"campaign {campaign_id} is {current['status']}; only drafts can be edited"
                )
        return await self.get(campaign_id)

    async def _check_tag_ids(self, tenant_id: str, values: dict[str, Any]) -> None:
        """Tag filters may only name tags of the campaign's own tenant."""
        requested = {int(tag_id) for field in TAG_FILTER_FIELDS for tag_id in values.get(field) or []}
        if not requested:
            return
        foreign = requested - await self.db.tags.ids_for_tenant(tenant_id)
        if foreign:
            raise TagNotFound(min(foreign), tenant_id)

    async def validate_configuration(self, campaign: dict[str, Any]) -> None:
        """Raise CampaignConfigurationError if the campaign cannot be sent."""
        missing = []
        if not (campaign.get("subject") or "").strip():
            missing.append("subject")
        if not (campaign.get("sender_email") or "").strip():
            missing.append("sender_email")
        template_id = campaign.get("template_id")
        if template_id is not None:
            template = await self.db.templates.get(template_id)
            if not template or template["tenant_id"] != campaign["tenant_id"]:
                raise CampaignConfigurationError(f"template {template_id} not found")
        elif not (campaign.get("body_html") or campaign.get("message")):
            missing.append("content")
        if missing:
            raise CampaignConfigurationError("missing " + ", ".join(missing))

    async def schedule(
        self, campaign_id: int, scheduled_for: int | None, now_ts: int
    ) -> CampaignStatus:
        """Schedule a draft, or start it right away when the time is empty or past.

        Returns:
            The new status: SCHEDULED or SENDING.

        Raises:
            CampaignConfigurationError: content or sender missing (stays draft).
            CampaignStateError: the campaign is not in a schedulable state.
        """
        campaign = await self.get(campaign_id)
        status = CampaignStatus(campaign["status"])
        if status not in CANCELLABLE:
            raise CampaignStateError(f"campaign {campaign_id} is {status.value}")
        await self.validate_configuration(campaign)

        if scheduled_for is not None and scheduled_for > now_ts:
            if status is not CampaignStatus.DRAFT:
                raise CampaignStateError(
                    f"campaign {campaign_id} is already scheduled; unschedule it first"
                )
            claimed = await self.db.campaigns.transition(
                campaign_id,
                [CampaignStatus.DRAFT.value],
                CampaignStatus.SCHEDULED.value,
                {"scheduled_for": int(scheduled_for)},
            )
            target = CampaignStatus.SCHEDULED
        else:
            claimed = await self.db.campaigns.transition(
                campaign_id,
                [s.value for s in CANCELLABLE],
                CampaignStatus.SENDING.value,
                {"scheduled_for": None, "started_ts": now_ts, "failure_reason": None},
            )
            target = CampaignStatus.SENDING
        if not claimed:
            raise CampaignStateError(f"campaign {campaign_id} changed state concurrently")
        logger.info("Campaign %s: %s -> %s", campaign_id, status.value, target.value)
        return target

    async def unschedule(self, campaign_id: int) -> None:
        """Demote a scheduled campaign back to draft."""
        claimed = await self.db.campaigns.transition(
            campaign_id,
            [CampaignStatus.SCHEDULED.value],
            CampaignStatus.DRAFT.value,
            {"scheduled_for": None},
        )
        if not claimed:
            campaign = await self.get(campaign_id)
            raise CampaignStateError(f"campaign {campaign_id} is {campaign['status']}, not scheduled")

    async def start_sending(self, campaign_id: int, now_ts: int, override: bool = False) -> bool:
        """Claim a scheduled campaign for dispatch.

        Returns:
            True if this caller won the claim, False if another worker did.

        Raises:
            CampaignStateError: not scheduled, or scheduled_for not reached
                without override.
        """
        campaign = await self.get(campaign_id)
        if campaign["status"] != CampaignStatus.SCHEDULED.value:
            raise CampaignStateError(f"campaign {campaign_id} is {campaign['status']}, not scheduled")
        scheduled_for = campaign.get("scheduled_for")
        if not override and scheduled_for is not None and scheduled_for > now_ts:
            raise CampaignStateError(
                f"campaign {campaign_id} is scheduled for {scheduled_for}; use override to send now"
            )
        return await self.db.campaigns.transition(
            campaign_id,
            [CampaignStatus.SCHEDULED.value],
            CampaignStatus.SENDING.value,
            {"scheduled_for": None, "started_ts": now_ts},
        )

    async def mark_sent(self, campaign_id: int, now_ts: int) -> bool:
        done = await self.db.campaigns.transition(
            campaign_id,
            [CampaignStatus.SENDING.value],
            CampaignStatus.SENT.value,
            {"sent_ts": now_ts, "finished_ts": now_ts},
        )
        if done:
            logger.info("Campaign %s sent", campaign_id)
        return done

    async def mark_failed(self, campaign_id: int, reason: str, now_ts: int) -> bool:
        done = await self.db.campaigns.transition(
            campaign_id,
            [CampaignStatus.SENDING.value],
            CampaignStatus.FAILED.value,
            {"failure_reason": reason, "finished_ts": now_ts},
        )
        if done:
            logger.warning("Campaign %s failed: %s", campaign_id, reason)
        return done

    async def cancel(self, campaign_id: int) -> None:
        """Delete a campaign that has not started sending."""
        if await self.db.campaigns.remove_unsent(campaign_id):
            logger.info("Campaign %s cancelled", campaign_id)
            return
        campaign = await self.get(campaign_id)
        raise CampaignStateError(
            f"campaign {campaign_id} is {campaign['status']}; only draft or scheduled campaigns can be cancelled"
        )
