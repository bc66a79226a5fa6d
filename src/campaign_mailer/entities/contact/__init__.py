# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Contact entity: subscribers and their status lifecycle."""

from .table import (
    ACTIVE,
    CONFIRMED,
    CONTACT_STATUSES,
    PENDING,
    SUBSCRIBER_STATES,
    UNSUBSCRIBED,
    ContactsTable,
    normalise_email,
)

__all__ = [
    "ACTIVE",
    "CONFIRMED",
    "CONTACT_STATUSES",
    "PENDING",
    "SUBSCRIBER_STATES",
    "UNSUBSCRIBED",
    "ContactsTable",
    "normalise_email",
]
