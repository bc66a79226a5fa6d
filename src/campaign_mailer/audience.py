# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Recipient resolution: from a campaign's audience filter to contacts.

Rules, applied to the contacts of one tenant in ascending id order:

1. the contact's status must be in ``status_filters``; an empty filter
   selects nobody;
2. with a non-empty ``included_tag_ids`` the contact needs at least one of
   those tags (OR); an empty inclusion set does not restrict;
3. a contact carrying any tag of ``excluded_tag_ids``, or listed in
   ``excluded_contact_ids``, is dropped even if rule 2 matched.

The resolver is a pure read. Store errors propagate to the caller unchanged
so dispatch can abort before any send.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from .campaign_db import CampaignDb
from .entities.contact import normalise_email
from .logger import get_logger

logger = get_logger("audience")


@dataclass(frozen=True)
class AudienceFilter:
    """Tag/status filter of a campaign, as proper sets."""

    status_filters: frozenset[str] = frozenset()
    included_tag_ids: frozenset[int] = frozenset()
    excluded_tag_ids: frozenset[int] = frozenset()
    excluded_contact_ids: frozenset[int] = frozenset()

    @classmethod
    def build(
        cls,
        status_filters: Iterable[str] | None = None,
        included_tag_ids: Iterable[int] | None = None,
        excluded_tag_ids: Iterable[int] | None = None,
        excluded_contact_ids: Iterable[int] | None = None,
    ) -> AudienceFilter:
        return cls(
            status_filters=frozenset(status_filters or ()),
            included_tag_ids=frozenset(int(t) for t in included_tag_ids or ()),
            excluded_tag_ids=frozenset(int(t) for t in excluded_tag_ids or ()),
            excluded_contact_ids=frozenset(int(c) for c in excluded_contact_ids or ()),
        )

    @classmethod
    def from_campaign(cls, campaign: Mapping[str, Any]) -> AudienceFilter:
        return cls.build(
            campaign.get("status_filters"),
            campaign.get("included_tag_ids"),
            campaign.get("excluded_tag_ids"),
            campaign.get("excluded_contact_ids"),
        )


@dataclass(frozen=True)
class Recipient:
    contact_id: int
    email: str
    first_name: str | None = None
    last_name: str | None = None
    status: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "contact_id": self.contact_id,
            "email": self.email,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "status": self.status,
        }


@dataclass
class AudiencePreview:
    """Resolved recipients plus the contacts the exclusion rule removed."""

    recipients: list[Recipient] = field(default_factory=list)
    excluded: list[Recipient] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "recipient_count": len(self.recipients),
            "excluded_count": len(self.excluded),
            "recipients": [r.as_dict() for r in self.recipients],
            "excluded": [r.as_dict() for r in self.excluded],
        }


def select_recipients(
    contacts: Iterable[Mapping[str, Any]],
    tags_by_contact: Mapping[int, set[int]],
    audience: AudienceFilter,
) -> AudiencePreview:
    """Apply the audience rules to already-loaded contacts.

    Args:
        contacts: Contact rows in the order recipients must come out.
        tags_by_contact: Contact id -> tag ids.
        audience: The filter to apply.

    Returns:
        AudiencePreview whose ``recipients`` is the dispatch list and whose
        ``excluded`` lists contacts matched by status/inclusion but dropped
        by an exclusion.
    """
    preview = AudiencePreview()
    if not audience.status_filters:
        return preview

    seen: set[str] = set()
    for row in contacts:
        if row["status"] not in audience.status_filters:
            continue
        contact_tags = tags_by_contact.get(row["id"], set())
        if audience.included_tag_ids and not (contact_tags & audience.included_tag_ids):
            continue
        email = normalise_email(row["email"])
        if email in seen:
            continue
        seen.add(email)
        recipient = Recipient(
            contact_id=row["id"],
            email=email,
            first_name=row.get("first_name"),
            last_name=row.get("last_name"),
            status=row["status"],
        )
        if contact_tags & audience.excluded_tag_ids or row["id"] in audience.excluded_contact_ids:
            preview.excluded.append(recipient)
        else:
            preview.recipients.append(recipient)
    return preview


class RecipientResolver:
    """Computes the concrete recipient list of a campaign at a point in time."""

    def __init__(self, db: CampaignDb):
        self.db = db

    async def _load(self, tenant_id: str, audience: AudienceFilter) -> AudiencePreview:
        if not audience.status_filters:
            return AudiencePreview()
        contacts = await self.db.contacts.list_by_statuses(tenant_id, audience.status_filters)
        if not contacts:
            return AudiencePreview()
        tags_by_contact = await self.db.contact_tags.tags_by_contact(tenant_id)
        return select_recipients(contacts, tags_by_contact, audience)

    async def resolve(self, tenant_id: str, audience: AudienceFilter) -> list[Recipient]:
        """Ordered, deduplicated recipients for dispatch."""
        preview = await self._load(tenant_id, audience)
        logger.debug(
            "Resolved %d recipients for tenant %s (%d excluded)",
            len(preview.recipients), tenant_id, len(preview.excluded),
        )
        return preview.recipients

    async def preview(self, tenant_id: str, audience: AudienceFilter) -> AudiencePreview:
        """Same recipients as resolve(), plus the contacts removed by exclusion."""
        return await self._load(tenant_id, audience)
