# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Tests for the table managers and CampaignDb cascading operations."""

from __future__ import annotations

import pytest

from campaign_mailer.entities.campaign.table import DRAFT, SCHEDULED, SENDING, counter_increment_sql
from campaign_mailer.errors import (
    ContactNotFound,
    ContactStateError,
    DuplicateContactError,
    DuplicateTagError,
    TagNotFound,
    TagProtectedError,
    TenantNotFound,
)

from conftest import NOW


class TestTenants:
    @pytest.mark.asyncio
    async def test_add_and_get(self, db, tenant):
        row = await db.get_tenant(tenant)
        assert row["plan_tier"] == "essential"
        assert row["active"] is True
        assert row["emails_sent_this_cycle"] == 0

    @pytest.mark.asyncio
    async def test_upsert_keeps_usage_counter(self, db, tenant):
        await db.adapter.execute(
            "UPDATE tenants SET emails_sent_this_cycle = 42 WHERE id = :id", {"id": tenant}
        )
        await db.add_tenant({"id": tenant, "name": "ACME Inc", "plan_tier": "pro"})
        row = await db.get_tenant(tenant)
        assert row["name"] == "ACME Inc"
        assert row["plan_tier"] == "pro"
        assert row["emails_sent_this_cycle"] == 42

    @pytest.mark.asyncio
    async def test_list_active_only(self, db, tenant):
        await db.add_tenant({"id": "dormant", "plan_tier": "basic", "active": False})
        assert [t["id"] for t in await db.list_tenants()] == ["acme", "dormant"]
        assert [t["id"] for t in await db.list_tenants(active_only=True)] == ["acme"]

    @pytest.mark.asyncio
    async def test_update_fields_ignores_unknown_keys(self, db, tenant):
        assert await db.tenants.update_fields(tenant, {"timezone": "Europe/Rome", "bogus": 1})
        assert not await db.tenants.update_fields(tenant, {"emails_sent_this_cycle": 0})
        assert (await db.get_tenant(tenant))["timezone"] == "Europe/Rome"

    @pytest.mark.asyncio
    async def test_grant_bonus_replaces_previous(self, db, tenant):
        await db.tenants.grant_bonus(tenant, 500, NOW + 10)
        await db.tenants.grant_bonus(tenant, 200, NOW + 20)
        row = await db.get_tenant(tenant)
        assert row["bonus_emails"] == 200
        assert row["bonus_emails_expiry"] == NOW + 20

    @pytest.mark.asyncio
    async def test_reset_cycle(self, db, tenant):
        await db.adapter.execute(
            "UPDATE tenants SET emails_sent_this_cycle = 9 WHERE id = :id", {"id": tenant}
        )
        assert await db.tenants.reset_cycle(tenant, NOW)
        assert await db.tenants.sent_this_cycle(tenant) == 0
        assert (await db.get_tenant(tenant))["cycle_started_ts"] == NOW

    @pytest.mark.asyncio
    async def test_require_tenant_raises(self, db):
        with pytest.raises(TenantNotFound):
            await db.require_tenant("ghost")


class TestContacts:
    @pytest.mark.asyncio
    async def test_email_is_normalised(self, db, tenant):
        contact_id = await db.contacts.add(tenant, "  Ann@Example.COM ", NOW)
        contact = await db.contacts.get(contact_id)
        assert contact["email"] == "ann@example.com"
        assert contact["status"] == "pending"
        assert contact["confirmed_ts"] is None

    @pytest.mark.asyncio
    async def test_duplicate_email_rejected(self, db, tenant):
        await db.contacts.add(tenant, "ann@example.com", NOW)
        with pytest.raises(DuplicateContactError):
            await db.contacts.add(tenant, "ANN@example.com", NOW)

    @pytest.mark.asyncio
    async def test_same_email_in_other_tenant_allowed(self, db, tenant):
        await db.add_tenant({"id": "other", "plan_tier": "basic"})
        await db.contacts.add(tenant, "ann@example.com", NOW)
        await db.contacts.add("other", "ann@example.com", NOW)
        assert len(await db.contacts.list_for_tenant("other")) == 1

    @pytest.mark.asyncio
    async def test_cannot_create_unsubscribed(self, db, tenant):
        with pytest.raises(ContactStateError):
            await db.contacts.add(tenant, "ann@example.com", NOW, status="unsubscribed")

    @pytest.mark.asyncio
    async def test_pending_to_confirmed_sets_confirmed_ts(self, db, tenant):
        contact_id = await db.contacts.add(tenant, "ann@example.com", NOW)
        updated = await db.contacts.set_status(contact_id, "confirmed", NOW + 5)
        assert updated["status"] == "confirmed"
        assert updated["confirmed_ts"] == NOW + 5

    @pytest.mark.asyncio
    async def test_status_cannot_regress_to_pending(self, db, tenant):
        contact_id = await db.contacts.add(tenant, "ann@example.com", NOW, status="active")
        with pytest.raises(ContactStateError):
            await db.contacts.set_status(contact_id, "pending", NOW)

    @pytest.mark.asyncio
    async def test_unsubscribe_is_terminal(self, db, tenant):
        contact_id = await db.contacts.add(tenant, "ann@example.com", NOW, status="active")
        assert await db.contacts.unsubscribe(contact_id, NOW)
        assert not await db.contacts.unsubscribe(contact_id, NOW + 1)
        with pytest.raises(ContactStateError):
            await db.contacts.set_status(contact_id, "active", NOW)

    @pytest.mark.asyncio
    async def test_resubscribe_returns_to_pending(self, db, tenant):
        contact_id = await db.contacts.add(tenant, "ann@example.com", NOW, status="active")
        await db.contacts.unsubscribe(contact_id, NOW)
        assert await db.contacts.resubscribe(contact_id, NOW + 1)
        contact = await db.contacts.get(contact_id)
        assert contact["status"] == "pending"
        assert contact["unsubscribed_ts"] is None

    @pytest.mark.asyncio
    async def test_resubscribe_requires_unsubscribed(self, db, tenant):
        contact_id = await db.contacts.add(tenant, "ann@example.com", NOW)
        with pytest.raises(ContactStateError):
            await db.contacts.resubscribe(contact_id, NOW)

    @pytest.mark.asyncio
    async def test_list_by_statuses(self, db, tenant):
        await db.contacts.add(tenant, "a@example.com", NOW, status="active")
        await db.contacts.add(tenant, "b@example.com", NOW)
        await db.contacts.add(tenant, "c@example.com", NOW, status="confirmed")
        rows = await db.contacts.list_by_statuses(tenant, ["confirmed", "active"])
        assert [r["email"] for r in rows] == ["a@example.com", "c@example.com"]
        assert await db.contacts.list_by_statuses(tenant, []) == []


class TestTags:
    @pytest.mark.asyncio
    async def test_tags_listed_by_name(self, db, tenant):
        await db.tags.add(tenant, "zeta")
        await db.tags.add(tenant, "alpha", color="red")
        tags = await db.tags.list_for_tenant(tenant)
        assert [t["name"] for t in tags] == ["alpha", "zeta"]
        assert tags[0]["color"] == "red"
        assert tags[0]["is_system"] is False

    @pytest.mark.asyncio
    async def test_system_tag_protected(self, db, tenant):
        tag_id = await db.tags.add(tenant, "customers", is_system=True)
        with pytest.raises(TagProtectedError):
            await db.delete_tag(tag_id)
        assert await db.tags.get(tag_id) is not None

    @pytest.mark.asyncio
    async def test_delete_tag_drops_links(self, db, tenant):
        tag_id = await db.tags.add(tenant, "vip")
        contact_id = await db.contacts.add(tenant, "ann@example.com", NOW)
        await db.contact_tags.assign(contact_id, tag_id)
        assert await db.delete_tag(tag_id)
        assert await db.contact_tags.tag_ids_for_contact(contact_id) == []

    @pytest.mark.asyncio
    async def test_assign_is_idempotent(self, db, tenant):
        tag_id = await db.tags.add(tenant, "vip")
        contact_id = await db.contacts.add(tenant, "ann@example.com", NOW)
        assert await db.contact_tags.assign(contact_id, tag_id)
        assert not await db.contact_tags.assign(contact_id, tag_id)
        assert await db.contact_tags.tags_by_contact(tenant) == {contact_id: {tag_id}}
        assert await db.contact_tags.unassign(contact_id, tag_id)
        assert await db.contact_tags.tags_by_contact(tenant) == {}


    @pytest.mark.asyncio
    async def test_duplicate_name_rejected(self, db, tenant):
        await db.tags.add(tenant, "vip")
        with pytest.raises(DuplicateTagError):
            await db.tags.add(tenant, " vip ")
        await db.add_tenant({"id": "other", "plan_tier": "basic"})
        assert await db.tags.add("other", "vip")

    @pytest.mark.asyncio
    async def test_rename_to_taken_name_rejected(self, db, tenant):
        first = await db.tags.add(tenant, "a")
        second = await db.tags.add(tenant, "b")

        with pytest.raises(DuplicateTagError):
            await db.tags.update_fields(second, name="a")

        assert (await db.tags.get(second))["name"] == "b"
        assert await db.tags.update_fields(first, name="a", color="red")
        assert await db.tags.update_fields(second, name="c")
        assert await db.tags.update_fields(second, color="green")
        assert not await db.tags.update_fields(404, name="d")
        assert not await db.tags.update_fields(second)

    @pytest.mark.asyncio
    async def test_assign_stays_within_tenant(self, db, tenant):
        await db.add_tenant({"id": "other", "plan_tier": "basic"})
        foreign = await db.tags.add("other", "vip")
        own = await db.tags.add(tenant, "vip")
        contact_id = await db.contacts.add(tenant, "ann.com", NOW)

        with pytest.raises(TagNotFound):
            await db.assign_tag(contact_id, foreign)
        with pytest.raises(TagNotFound):
            await db.assign_tag(contact_id, 4242)
        with pytest.raises(ContactNotFound):
            await db.assign_tag(4242, own)

        assert await db.assign_tag(contact_id, own)
        assert await db.contact_tags.tags_by_contact(tenant) == {contact_id: {own}}

class TestCampaigns:
    @pytest.mark.asyncio
    async def test_add_defaults_audience_sets(self, db, tenant):
        campaign_id = await db.campaigns.add({"tenant_id": tenant, "title": "June"})
        campaign = await db.campaigns.get(campaign_id)
        assert campaign["status"] == DRAFT
        assert campaign["included_tag_ids"] == []
        assert campaign["status_filters"] == []

    @pytest.mark.asyncio
    async def test_sets_are_deduplicated_and_sorted(self, db, tenant):
        campaign_id = await db.campaigns.add(
            {"tenant_id": tenant, "included_tag_ids": [3, 1, 3], "status_filters": ["confirmed", "active"]}
        )
        campaign = await db.campaigns.get(campaign_id)
        assert campaign["included_tag_ids"] == [1, 3]
        assert campaign["status_filters"] == ["active", "confirmed"]

    @pytest.mark.asyncio
    async def test_update_draft_only_touches_drafts(self, db, tenant):
        campaign_id = await db.campaigns.add({"tenant_id": tenant})
        assert await db.campaigns.update_draft(campaign_id, {"subject": "Hi", "status": "sent"})
        assert (await db.campaigns.get(campaign_id))["status"] == DRAFT
        await db.campaigns.transition(campaign_id, [DRAFT], SCHEDULED, {"scheduled_for": NOW})
        assert not await db.campaigns.update_draft(campaign_id, {"subject": "Changed"})
        assert (await db.campaigns.get(campaign_id))["subject"] == "Hi"

    @pytest.mark.asyncio
    async def test_transition_is_conditional(self, db, tenant):
        campaign_id = await db.campaigns.add({"tenant_id": tenant})
        assert await db.campaigns.transition(campaign_id, [DRAFT], SCHEDULED)
        assert await db.campaigns.transition(campaign_id, [SCHEDULED], SENDING)
        assert not await db.campaigns.transition(campaign_id, [SCHEDULED], SENDING)

    @pytest.mark.asyncio
    async def test_due_scheduled(self, db, tenant):
        later = await db.campaigns.add({"tenant_id": tenant})
        due = await db.campaigns.add({"tenant_id": tenant})
        await db.campaigns.transition(later, [DRAFT], SCHEDULED, {"scheduled_for": NOW + 60})
        await db.campaigns.transition(due, [DRAFT], SCHEDULED, {"scheduled_for": NOW - 60})
        assert [c["id"] for c in await db.campaigns.due_scheduled(NOW)] == [due]

    def test_counter_sql_rejects_unknown_field(self):
        assert "opened_count = opened_count + 1" in counter_increment_sql("opened_count")
        with pytest.raises(ValueError):
            counter_increment_sql("status")


class TestDeleteTenant:
    @pytest.mark.asyncio
    async def test_removes_audience_and_unsent_campaigns(self, db, tenant):
        tag_id = await db.tags.add(tenant, "vip")
        contact_id = await db.contacts.add(tenant, "ann@example.com", NOW)
        await db.contact_tags.assign(contact_id, tag_id)
        await db.campaigns.add({"tenant_id": tenant})
        await db.addons.add({"id": "sub_1", "tenant_id": tenant, "product_id": "newsletter"})

        assert await db.delete_tenant(tenant)
        assert await db.get_tenant(tenant) is None
        assert await db.contacts.count({"tenant_id": tenant}) == 0
        assert await db.contact_tags.count() == 0
        assert await db.addons.list_for_tenant(tenant) == []

    @pytest.mark.asyncio
    async def test_campaign_history_blocks_tenant_row_delete(self, db, tenant):
        campaign_id = await db.campaigns.add({"tenant_id": tenant})
        await db.campaigns.transition(campaign_id, [DRAFT], SENDING)
        assert not await db.delete_tenant(tenant)
        assert await db.get_tenant(tenant) is not None
        assert await db.campaigns.get(campaign_id) is not None

    @pytest.mark.asyncio
    async def test_delete_contact_keeps_message_history(self, db, tenant):
        contact_id = await db.contacts.add(tenant, "ann@example.com", NOW)
        campaign_id = await db.campaigns.add({"tenant_id": tenant})
        await db.campaign_messages.insert(
            {
                "campaign_id": campaign_id,
                "message_id": "m-1",
                "recipient_email": "ann@example.com",
                "contact_id": contact_id,
                "sent_ts": NOW,
            }
        )
        assert await db.delete_contact(contact_id)
        assert await db.contacts.get(contact_id) is None
        assert await db.campaign_messages.count_for_campaign(campaign_id) == 1
