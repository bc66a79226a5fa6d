# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Tests for recipient resolution."""

from __future__ import annotations

import pytest
import pytest_asyncio

from campaign_mailer.audience import AudienceFilter, RecipientResolver, select_recipients

from conftest import NOW


def contact(contact_id, email, status="active", **extra):
    return {"id": contact_id, "email": email, "status": status, **extra}


class TestSelectRecipients:
    def test_empty_status_filter_selects_nobody(self):
        contacts = [contact(1, "a@x.com"), contact(2, "b@x.com")]
        preview = select_recipients(contacts, {}, AudienceFilter.build(status_filters=[]))
        assert preview.recipients == []
        assert preview.excluded == []

    def test_status_filter(self):
        contacts = [
            contact(1, "a@x.com", "active"),
            contact(2, "b@x.com", "pending"),
            contact(3, "c@x.com", "unsubscribed"),
            contact(4, "d@x.com", "confirmed"),
        ]
        audience = AudienceFilter.build(status_filters=["active", "confirmed"])
        preview = select_recipients(contacts, {}, audience)
        assert [r.contact_id for r in preview.recipients] == [1, 4]

    def test_inclusion_is_any_of(self):
        contacts = [contact(1, "a@x.com"), contact(2, "b@x.com"), contact(3, "c@x.com")]
        tags = {1: {10}, 2: {20}, 3: {30}}
        audience = AudienceFilter.build(status_filters=["active"], included_tag_ids=[10, 20])
        preview = select_recipients(contacts, tags, audience)
        assert [r.contact_id for r in preview.recipients] == [1, 2]

    def test_exclusion_wins_over_inclusion(self):
        contacts = [contact(1, "a@x.com"), contact(2, "b@x.com")]
        tags = {1: {10, 99}, 2: {10}}
        audience = AudienceFilter.build(
            status_filters=["active"], included_tag_ids=[10], excluded_tag_ids=[99]
        )
        preview = select_recipients(contacts, tags, audience)
        assert [r.contact_id for r in preview.recipients] == [2]
        assert [r.contact_id for r in preview.excluded] == [1]

    def test_excluded_contact_ids(self):
        contacts = [contact(1, "a@x.com"), contact(2, "b@x.com")]
        audience = AudienceFilter.build(status_filters=["active"], excluded_contact_ids=[2])
        preview = select_recipients(contacts, {}, audience)
        assert [r.contact_id for r in preview.recipients] == [1]
        assert [r.email for r in preview.excluded] == ["b@x.com"]

    def test_duplicate_emails_keep_first(self):
        contacts = [contact(1, "Ann@X.com"), contact(2, "ann@x.com ")]
        preview = select_recipients(contacts, {}, AudienceFilter.build(status_filters=["active"]))
        assert len(preview.recipients) == 1
        assert preview.recipients[0].contact_id == 1
        assert preview.recipients[0].email == "ann@x.com"

    def test_from_campaign_handles_missing_fields(self):
        audience = AudienceFilter.from_campaign({"status_filters": ["active"], "included_tag_ids": None})
        assert audience.status_filters == frozenset({"active"})
        assert audience.included_tag_ids == frozenset()


@pytest_asyncio.fixture
async def audience_db(db, tenant):
    """Five contacts: two tagged 'news', one also tagged 'blocked'."""
    news = await db.tags.add(tenant, "news")
    blocked = await db.tags.add(tenant, "blocked")
    ids = []
    for i, status in enumerate(["active", "confirmed", "pending", "active", "active"]):
        ids.append(await db.contacts.add(tenant, f"c{i}@example.com", NOW, status=status))
    await db.contacts.unsubscribe(ids[4], NOW)
    await db.contact_tags.assign(ids[0], news)
    await db.contact_tags.assign(ids[1], news)
    await db.contact_tags.assign(ids[1], blocked)
    return {"db": db, "ids": ids, "news": news, "blocked": blocked}


class TestRecipientResolver:
    @pytest.mark.asyncio
    async def test_resolve_orders_by_contact_id(self, audience_db, tenant):
        resolver = RecipientResolver(audience_db["db"])
        audience = AudienceFilter.build(status_filters=["active", "confirmed"])
        recipients = await resolver.resolve(tenant, audience)
        ids = audience_db["ids"]
        assert [r.contact_id for r in recipients] == [ids[0], ids[1], ids[3]]

    @pytest.mark.asyncio
    async def test_resolve_with_tags(self, audience_db, tenant):
        resolver = RecipientResolver(audience_db["db"])
        audience = AudienceFilter.build(
            status_filters=["active", "confirmed"],
            included_tag_ids=[audience_db["news"]],
            excluded_tag_ids=[audience_db["blocked"]],
        )
        recipients = await resolver.resolve(tenant, audience)
        assert [r.contact_id for r in recipients] == [audience_db["ids"][0]]

    @pytest.mark.asyncio
    async def test_preview_reports_excluded(self, audience_db, tenant):
        resolver = RecipientResolver(audience_db["db"])
        audience = AudienceFilter.build(
            status_filters=["active", "confirmed"],
            included_tag_ids=[audience_db["news"]],
            excluded_tag_ids=[audience_db["blocked"]],
        )
        preview = await resolver.preview(tenant, audience)
        data = preview.as_dict()
        assert data["recipient_count"] == 1
        assert data["excluded_count"] == 1
        assert data["excluded"][0]["email"] == "c1@example.com"

    @pytest.mark.asyncio
    async def test_unsubscribed_never_selected_unless_filtered(self, audience_db, tenant):
        resolver = RecipientResolver(audience_db["db"])
        recipients = await resolver.resolve(tenant, AudienceFilter.build(status_filters=["active"]))
        assert audience_db["ids"][4] not in [r.contact_id for r in recipients]

    @pytest.mark.asyncio
    async def test_resolution_reflects_current_store(self, audience_db, tenant):
        db = audience_db["db"]
        resolver = RecipientResolver(db)
        audience = AudienceFilter.build(status_filters=["active"])
        before = await resolver.resolve(tenant, audience)
        await db.contacts.add(tenant, "late@example.com", NOW, status="active")
        after = await resolver.resolve(tenant, audience)
        assert len(after) == len(before) + 1
        assert after[-1].email == "late@example.com"
