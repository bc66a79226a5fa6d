# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Tests for the campaign lifecycle."""

from __future__ import annotations

import asyncio

import pytest
import pytest_asyncio

from campaign_mailer.errors import (
    CampaignConfigurationError,
    CampaignNotFound,
    CampaignStateError,
    TagNotFound,
    TenantNotFound,
)
from campaign_mailer.state import CampaignStateMachine, CampaignStatus, can_transition

from conftest import NOW

READY = {
    "title": "June news",
    "subject": "Hello",
    "sender_email": "news@acme.test",
    "body_html": "<p>Hi</p>",
    "status_filters": ["active"],
}


@pytest_asyncio.fixture
async def machine(db, tenant):
    return CampaignStateMachine(db)


async def status_of(db, campaign_id):
    return (await db.campaigns.get(campaign_id))["status"]


def test_transition_table():
    assert can_transition("draft", "scheduled")
    assert can_transition("draft", "sending")
    assert can_transition("scheduled", "draft")
    assert can_transition("sending", "failed")
    assert not can_transition("sent", "draft")
    assert not can_transition("failed", "sending")
    assert not can_transition("draft", "sent")


class TestCreateAndEdit:
    @pytest.mark.asyncio
    async def test_create_requires_tenant(self, machine):
        with pytest.raises(TenantNotFound):
            await machine.create("ghost", READY)

    @pytest.mark.asyncio
    async def test_create_starts_in_draft(self, machine, db, tenant):
        campaign_id = await machine.create(tenant, READY)
        assert await status_of(db, campaign_id) == "draft"

    @pytest.mark.asyncio
    async def test_edit_draft(self, machine, tenant):
        campaign_id = await machine.create(tenant, READY)
        campaign = await machine.edit(campaign_id, {"subject": "Updated", "excluded_contact_ids": [7]})
        assert campaign["subject"] == "Updated"
        assert campaign["excluded_contact_ids"] == [7]

    @pytest.mark.asyncio
    async def test_scheduled_campaign_is_not_editable(self, machine, tenant):
        campaign_id = await machine.create(tenant, READY)
        await machine.schedule(campaign_id, NOW + 3600, NOW)
        with pytest.raises(CampaignStateError):
            await machine.edit(campaign_id, {"subject": "Too late"})

    @pytest.mark.asyncio
    async def test_create_rejects_other_tenants_tags(self, machine, db, tenant):
        own = await db.tags.add(tenant, "news")
        await db.add_tenant({"id": "other", "plan_tier": "basic"})
        foreign = await db.tags.add("other", "vip")

        with pytest.raises(TagNotFound):
            await machine.create(tenant, {**READY, "included_tag_ids": [own, foreign]})
        with pytest.raises(TagNotFound):
            await machine.create(tenant, {**READY, "excluded_tag_ids": [foreign]})
        assert await db.campaigns.list_for_tenant(tenant) == []

        campaign_id = await machine.create(tenant, {**READY, "included_tag_ids": [own]})
        assert (await machine.get(campaign_id))["included_tag_ids"] == [own]

    @pytest.mark.asyncio
    async def test_edit_rejects_unknown_tags(self, machine, db, tenant):
        await db.add_tenant({"id": "other", "plan_tier": "basic"})
        foreign = await db.tags.add("other", "vip")
        campaign_id = await machine.create(tenant, READY)

        with pytest.raises(TagNotFound):
            await machine.edit(campaign_id, {"excluded_tag_ids": [foreign]})
        with pytest.raises(TagNotFound):
            await machine.edit(campaign_id, {"included_tag_ids": [4242]})
        assert (await machine.get(campaign_id))["excluded_tag_ids"] == []

    @pytest.mark.asyncio
    async def test_get_unknown_campaign(self, machine):
        with pytest.raises(CampaignNotFound):
            await machine.get(999)


class TestSchedule:
    @pytest.mark.asyncio
    async def test_future_time_schedules(self, machine, db, tenant):
        campaign_id = await machine.create(tenant, READY)
        assert await machine.schedule(campaign_id, NOW + 60, NOW) is CampaignStatus.SCHEDULED
        campaign = await db.campaigns.get(campaign_id)
        assert campaign["status"] == "scheduled"
        assert campaign["scheduled_for"] == NOW + 60

    @pytest.mark.asyncio
    async def test_missing_or_past_time_sends_now(self, machine, db, tenant):
        now_id = await machine.create(tenant, READY)
        past_id = await machine.create(tenant, READY)
        assert await machine.schedule(now_id, None, NOW) is CampaignStatus.SENDING
        assert await machine.schedule(past_id, NOW - 10, NOW) is CampaignStatus.SENDING
        campaign = await db.campaigns.get(past_id)
        assert campaign["scheduled_for"] is None
        assert campaign["started_ts"] == NOW

    @pytest.mark.asyncio
    async def test_missing_content_stays_draft(self, machine, db, tenant):
        campaign_id = await machine.create(tenant, {"title": "Empty", "sender_email": "a@b.c"})
        with pytest.raises(CampaignConfigurationError, match="subject"):
            await machine.schedule(campaign_id, None, NOW)
        assert await status_of(db, campaign_id) == "draft"

    @pytest.mark.asyncio
    async def test_foreign_template_rejected(self, machine, db, tenant):
        await db.add_tenant({"id": "other", "plan_tier": "basic"})
        template_id = await db.templates.add("other", "theirs", "<p>x</p>")
        data = {**READY, "body_html": None, "template_id": template_id}
        campaign_id = await machine.create(tenant, data)
        with pytest.raises(CampaignConfigurationError, match="template"):
            await machine.schedule(campaign_id, None, NOW)

    @pytest.mark.asyncio
    async def test_cannot_schedule_twice(self, machine, tenant):
        campaign_id = await machine.create(tenant, READY)
        await machine.schedule(campaign_id, NOW + 60, NOW)
        with pytest.raises(CampaignStateError):
            await machine.schedule(campaign_id, NOW + 120, NOW)

    @pytest.mark.asyncio
    async def test_unschedule_clears_time(self, machine, db, tenant):
        campaign_id = await machine.create(tenant, READY)
        await machine.schedule(campaign_id, NOW + 60, NOW)
        await machine.unschedule(campaign_id)
        campaign = await db.campaigns.get(campaign_id)
        assert campaign["status"] == "draft"
        assert campaign["scheduled_for"] is None
        with pytest.raises(CampaignStateError):
            await machine.unschedule(campaign_id)


class TestStartSending:
    @pytest.mark.asyncio
    async def test_before_time_requires_override(self, machine, db, tenant):
        campaign_id = await machine.create(tenant, READY)
        await machine.schedule(campaign_id, NOW + 60, NOW)
        with pytest.raises(CampaignStateError):
            await machine.start_sending(campaign_id, NOW)
        assert await machine.start_sending(campaign_id, NOW, override=True)
        assert await status_of(db, campaign_id) == "sending"

    @pytest.mark.asyncio
    async def test_concurrent_claims_have_one_winner(self, machine, tenant):
        campaign_id = await machine.create(tenant, READY)
        await machine.schedule(campaign_id, NOW + 60, NOW)
        results = await asyncio.gather(
            *(machine.start_sending(campaign_id, NOW + 60) for _ in range(4)),
            return_exceptions=True,
        )
        assert results.count(True) == 1

    @pytest.mark.asyncio
    async def test_terminal_states(self, machine, db, tenant):
        campaign_id = await machine.create(tenant, READY)
        await machine.schedule(campaign_id, None, NOW)
        assert await machine.mark_failed(campaign_id, "quota exhausted", NOW)
        assert not await machine.mark_sent(campaign_id, NOW)
        campaign = await db.campaigns.get(campaign_id)
        assert campaign["status"] == "failed"
        assert campaign["failure_reason"] == "quota exhausted"
        assert campaign["finished_ts"] == NOW


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancel_draft_deletes(self, machine, db, tenant):
        campaign_id = await machine.create(tenant, READY)
        await machine.cancel(campaign_id)
        assert await db.campaigns.get(campaign_id) is None

    @pytest.mark.asyncio
    async def test_cancel_sending_refused(self, machine, tenant):
        campaign_id = await machine.create(tenant, READY)
        await machine.schedule(campaign_id, None, NOW)
        with pytest.raises(CampaignStateError):
            await machine.cancel(campaign_id)
