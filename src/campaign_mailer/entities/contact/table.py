# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Contacts table manager with forward-only status lifecycle.

Status values:
- pending: subscribed, awaiting confirmation
- active / confirmed: equivalent subscriber states
- unsubscribed: terminal until an explicit resubscribe
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any

from ...errors import ContactStateError, DuplicateContactError
from ...sql import Integer, String, Table, Timestamp

PENDING = "pending"
ACTIVE = "active"
CONFIRMED = "confirmed"
UNSUBSCRIBED = "unsubscribed"

SUBSCRIBER_STATES = frozenset({ACTIVE, CONFIRMED})
CONTACT_STATUSES = frozenset({PENDING, ACTIVE, CONFIRMED, UNSUBSCRIBED})


def normalise_email(email: str) -> str:
    return email.strip().lower()


def check_transition(current: str, new: str) -> None:
    """Raise ContactStateError unless ``current -> new`` moves forward.

    unsubscribe and resubscribe have dedicated methods and never pass here.
    """
    if new not in CONTACT_STATUSES or new == UNSUBSCRIBED:
        raise ContactStateError(f"cannot set contact status to '{new}'")
    if current == UNSUBSCRIBED:
        raise ContactStateError("contact is unsubscribed; resubscribe first")
    if current in SUBSCRIBER_STATES and new == PENDING:
        raise ContactStateError(f"contact status cannot regress from '{current}' to 'pending'")


class ContactsTable(Table):
    """Contacts table: subscribers owned by a tenant.

    (tenant_id, email) is unique; emails are stored lower-cased.
    """

    name = "contacts"

    def configure(self) -> None:
        c = self.columns
        c.column("id", Integer, primary_key=True)
        c.column("tenant_id", String, nullable=False).relation("tenants", sql=True)
        c.column("email", String, nullable=False)
        c.column("first_name", String)
        c.column("last_name", String)
        c.column("status", String, nullable=False, default=PENDING)
        c.column("subscribed_ts", Integer)
        c.column("confirmed_ts", Integer)
        c.column("unsubscribed_ts", Integer)
        c.column("created_at", Timestamp, default="CURRENT_TIMESTAMP")
        c.unique("tenant_id", "email")
        c.index("tenant_id", "status")

    async def add(
        self,
        tenant_id: str,
        email: str,
        now_ts: int,
        first_name: str | None = None,
        last_name: str | None = None,
        status: str = PENDING,
    ) -> int:
        """Insert a contact and return its id.

        Raises:
            DuplicateContactError: (tenant_id, email) already exists.
            ContactStateError: status is not a valid initial status.
        """
        email = normalise_email(email)
        if status not in (PENDING, ACTIVE, CONFIRMED):
            raise ContactStateError(f"invalid initial status '{status}'")
        if await self.exists({"tenant_id": tenant_id, "email": email}):
            raise DuplicateContactError(email, tenant_id)
        return await self.insert_returning_id(
            {
                "tenant_id": tenant_id,
                "email": email,
                "first_name": first_name,
                "last_name": last_name,
                "status": status,
                "subscribed_ts": now_ts,
                "confirmed_ts": now_ts if status in SUBSCRIBER_STATES else None,
            }
        )

    async def get(self, contact_id: int) -> dict[str, Any] | None:
        return await self.select_one(where={"id": contact_id})

    async def get_by_email(self, tenant_id: str, email: str) -> dict[str, Any] | None:
        return await self.select_one(where={"tenant_id": tenant_id, "email": normalise_email(email)})

    async def list_for_tenant(self, tenant_id: str, status: str | None = None) -> list[dict[str, Any]]:
        where: dict[str, Any] = {"tenant_id": tenant_id}
        if status:
            where["status"] = status
        return await self.select(where=where, order_by="id")

    async def list_by_statuses(self, tenant_id: str, statuses: Iterable[str]) -> list[dict[str, Any]]:
        """Contacts whose status is in ``statuses``, in ascending id order."""
        wanted = sorted(set(statuses))
        if not wanted:
            return []
        params: dict[str, Any] = {"tenant_id": tenant_id}
        params.update({f"st_{i}": s for i, s in enumerate(wanted)})
        placeholders = ", ".join(f":st_{i}" for i in range(len(wanted)))
        return await self.fetch_all(
            f"""
            SELECT id, email, first_name, last_name, status
            FROM contacts
            WHERE tenant_id = :tenant_id AND status IN ({placeholders})
            ORDER BY id
            """,
            params,
        )

    async def set_status(self, contact_id: int, status: str, now_ts: int) -> dict[str, Any]:
        """Move a contact forward (pending -> active/confirmed)."""
        contact = await self.get(contact_id)
        if not contact:
            raise ContactStateError(f"contact {contact_id} not found")
        check_transition(contact["status"], status)
        values: dict[str, Any] = {"status": status}
        if status in SUBSCRIBER_STATES and not contact.get("confirmed_ts"):
            values["confirmed_ts"] = now_ts
        await self.update(values, {"id": contact_id})
        contact.update(values)
        return contact

    async def unsubscribe(self, contact_id: int, now_ts: int) -> bool:
        """Terminal opt-out. Returns False if the contact was already unsubscribed."""
        rowcount = await self.execute(
            """
            UPDATE contacts SET status = :status, unsubscribed_ts = :now_ts
            WHERE id = :contact_id AND status != :status
            """,
            {"status": UNSUBSCRIBED, "now_ts": now_ts, "contact_id": contact_id},
        )
        return rowcount > 0

    async def resubscribe(self, contact_id: int, now_ts: int) -> bool:
        """Reactivate an unsubscribed contact as pending."""
        rowcount = await self.execute(
            """
            UPDATE contacts
            SET status = :pending, unsubscribed_ts = NULL, confirmed_ts = NULL,
                subscribed_ts = :now_ts
            WHERE id = :contact_id AND status = :unsubscribed
            """,
            {"pending": PENDING, "unsubscribed": UNSUBSCRIBED, "now_ts": now_ts, "contact_id": contact_id},
        )
        if rowcount == 0:
            raise ContactStateError(f"contact {contact_id} is not unsubscribed")
        return True

    async def remove(self, contact_id: int) -> bool:
        return await self.delete(where={"id": contact_id}) > 0

    async def purge_for_tenant(self, tenant_id: str) -> int:
        return await self.delete(where={"tenant_id": tenant_id})
