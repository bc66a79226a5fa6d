# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Exception hierarchy shared by the campaign mailer components.

Quota exhaustion has no exception here: it ends the campaign as
``failed`` with reason "quota exhausted".
"""

from __future__ import annotations


class CampaignMailerError(RuntimeError):
    """Base class for domain errors surfaced to API and CLI callers."""

    code = "campaign_mailer_error"


class TenantNotFound(CampaignMailerError):
    code = "tenant_not_found"

    def __init__(self, tenant_id: str):
        super().__init__(f"tenant not found: {tenant_id}")
        self.tenant_id = tenant_id


class CampaignNotFound(CampaignMailerError):
    code = "campaign_not_found"

    def __init__(self, campaign_id: int):
        super().__init__(f"campaign not found: {campaign_id}")
        self.campaign_id = campaign_id


class ContactNotFound(CampaignMailerError):
    code = "not_found"

    def __init__(self, contact_id: int | str):
        super().__init__(f"contact not found: {contact_id}")
        self.contact_id = contact_id


class TagNotFound(CampaignMailerError):
    """Unknown tag, or a tag owned by another tenant."""

    code = "not_found"

    def __init__(self, tag_id: int, tenant_id: str | None = None):
        message = f"tag not found: {tag_id}"
        if tenant_id is not None:
            message += f" (tenant {tenant_id})"
        super().__init__(message)
        self.tag_id = tag_id
        self.tenant_id = tenant_id


class CampaignStateError(CampaignMailerError):
    """Illegal lifecycle transition or mutation outside ``draft``."""

    code = "invalid_state"


class CampaignConfigurationError(CampaignMailerError):
    """Campaign lacks content or sender identity; it stays in ``draft``."""

    code = "configuration_error"


class ContactStateError(CampaignMailerError):
    code = "invalid_contact_status"


class DuplicateContactError(CampaignMailerError):
    code = "duplicate_contact"

    def __init__(self, email: str, tenant_id: str):
        super().__init__(f"contact {email} already exists for tenant {tenant_id}")
        self.email = email
        self.tenant_id = tenant_id


class DuplicateTagError(CampaignMailerError):
    code = "duplicate_tag"

    def __init__(self, name: str, tenant_id: str):
        super().__init__(f"tag '{name}' already exists for tenant {tenant_id}")
        self.name = name
        self.tenant_id = tenant_id


class TagProtectedError(CampaignMailerError):
    code = "tag_protected"


class MissingFieldError(CampaignMailerError):
    """A command payload lacks a required field."""

    code = "missing_field"

    def __init__(self, field: str):
        super().__init__(f"missing '{field}'")
        self.field = field


class TransportError(CampaignMailerError):
    """Send failure reported by a mail transport.

    ``kind`` is one of ``temporary``, ``unavailable``, ``permanent`` or
    ``fatal`` (see ``campaign_mailer.transport``).
    """

    code = "transport_error"

    def __init__(self, message: str, kind: str = "temporary", smtp_code: int | None = None):
        super().__init__(message)
        self.kind = kind
        self.smtp_code = smtp_code

    @property
    def retryable(self) -> bool:
        return self.kind in ("temporary", "unavailable")

    @property
    def fatal(self) -> bool:
        return self.kind == "fatal"
