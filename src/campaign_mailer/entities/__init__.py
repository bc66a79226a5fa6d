# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Domain entities for the campaign mailer.

Each subdirectory contains a table.py with the SQL table manager.
"""

from .addon.table import AddonSubscriptionsTable
from .campaign.table import CampaignsTable
from .campaign_failure.table import CampaignFailuresTable
from .campaign_message.table import CampaignMessagesTable
from .contact.table import ContactsTable
from .contact_tag.table import ContactTagsTable
from .message_event.table import MessageEventTable
from .tag.table import TagsTable
from .template.table import TemplatesTable
from .tenant.table import TenantsTable

__all__ = [
    "AddonSubscriptionsTable",
    "CampaignFailuresTable",
    "CampaignMessagesTable",
    "CampaignsTable",
    "ContactTagsTable",
    "ContactsTable",
    "MessageEventTable",
    "TagsTable",
    "TemplatesTable",
    "TenantsTable",
]
