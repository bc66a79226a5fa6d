# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Service facade wiring the campaign components together.

CampaignService owns the database, the quota calculator, the recipient
resolver, the state machine, the dispatch engine, the delivery tracker and
the scheduler. API and CLI talk to it through ``handle_command(cmd,
payload)``, which always answers with a dict carrying ``ok``.

Example:
    service = CampaignService.from_settings(load_settings())
    await service.start()
    result = await service.handle_command("scheduleCampaign", {"campaign_id": 7})
"""

from __future__ import annotations

import time
from collections.abc import Callable
from typing import Any

from .audience import AudienceFilter, RecipientResolver
from .campaign_db import CampaignDb
from .config_loader import Settings
from .dispatch import DispatchEngine
from .entities.campaign import COUNTER_FIELDS
from .entities.contact import PENDING
from .errors import (
    CampaignMailerError,
    ContactNotFound,
    ContactStateError,
    DuplicateContactError,
    DuplicateTagError,
    MissingFieldError,
)
from .logger import get_logger
from .prometheus import CampaignMetrics
from .quota import QuotaCalculator, QuotaPolicy
from .scheduler import CampaignScheduler
from .state import CampaignStateMachine, CampaignStatus
from .tracker import DeliveryEvent, DeliveryTracker
from .transport import MailTransport, build_transport
from .unsubscribe import UnsubscribeLinks


CAMPAIGN_ID = ("campaign_id",)
CONTACT_ID = ("contact_id",)
TENANT_ID = ("tenant_id",)

# Payload fields each command cannot run without.
REQUIRED_FIELDS: dict[str, tuple[str, ...]] = {
    "addTenant": ("id",),
    "getTenant": TENANT_ID,
    "updateTenant": TENANT_ID,
    "deleteTenant": TENANT_ID,
    "grantBonus": ("tenant_id", "amount", "expiry_ts"),
    "resetCycle": TENANT_ID,
    "getQuota": TENANT_ID,
    "addAddon": ("id", "tenant_id", "product_id"),
    "listAddons": TENANT_ID,
    "deleteAddon": ("id",),
    "addContact": ("tenant_id", "email"),
    "importContacts": TENANT_ID,
    "listContacts": TENANT_ID,
    "setContactStatus": ("contact_id", "status"),
    "unsubscribeContact": CONTACT_ID,
    "resubscribeContact": CONTACT_ID,
    "deleteContact": CONTACT_ID,
    "addTag": ("tenant_id", "name"),
    "listTags": TENANT_ID,
    "updateTag": ("tag_id",),
    "deleteTag": ("tag_id",),
    "assignTag": ("contact_id", "tag_id"),
    "unassignTag": ("contact_id", "tag_id"),
    "addTemplate": ("tenant_id", "name", "html"),
    "listTemplates": TENANT_ID,
    "createCampaign": TENANT_ID,
    "getCampaign": CAMPAIGN_ID,
    "listCampaigns": TENANT_ID,
    "updateCampaign": CAMPAIGN_ID,
    "previewCampaign": CAMPAIGN_ID,
    "previewAudience": TENANT_ID,
    "scheduleCampaign": CAMPAIGN_ID,
    "sendNow": CAMPAIGN_ID,
    "unscheduleCampaign": CAMPAIGN_ID,
    "cancelCampaign": CAMPAIGN_ID,
    "campaignStats": CAMPAIGN_ID,
    "listFailures": CAMPAIGN_ID,
    "flaggedRecipients": TENANT_ID,
    "unsubscribeToken": ("token",),
}


def require_fields(payload: dict[str, Any], fields: tuple[str, ...]) -> None:
    for field in fields:
        if payload.get(field) is None:
            raise MissingFieldError(field)


class CampaignService:
    """Entry point for every operation exposed by API and CLI."""

    def __init__(
        self,
        db_path: str = "/data/campaigns.db",
        transport: MailTransport | None = None,
        *,
        quota_policy: QuotaPolicy | None = None,
        unsubscribe_secret: str = "change-me",
        unsubscribe_base_url: str = "http://localhost:8000",
        max_concurrent_sends: int = 5,
        max_retries: int = 3,
        retry_delays: list[int] | None = None,
        tick_interval: float = 60.0,
        test_mode: bool = False,
        start_active: bool = True,
        log_delivery_activity: bool = False,
        metrics: CampaignMetrics | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.logger = get_logger("service")
        self._clock = clock
        self.db = CampaignDb(db_path)
        self.metrics = metrics or CampaignMetrics()
        self.quota = QuotaCalculator(self.db, quota_policy)
        self.resolver = RecipientResolver(self.db)
        self.state = CampaignStateMachine(self.db)
        self.unsubscribe = UnsubscribeLinks(unsubscribe_secret, unsubscribe_base_url)
        self.transport = transport
        self.engine: DispatchEngine | None = None
        self.scheduler: CampaignScheduler | None = None
        if transport is not None:
            self._wire_dispatch(
                transport,
                max_concurrent_sends=max_concurrent_sends,
                max_retries=max_retries,
                retry_delays=retry_delays,
                log_delivery_activity=log_delivery_activity,
                tick_interval=tick_interval,
                test_mode=test_mode,
                start_active=start_active,
            )
        self.tracker = DeliveryTracker(self.db, self.metrics, clock=clock)

    def _wire_dispatch(
        self,
        transport: MailTransport,
        *,
        max_concurrent_sends: int,
        max_retries: int,
        retry_delays: list[int] | None,
        log_delivery_activity: bool,
        tick_interval: float,
        test_mode: bool,
        start_active: bool,
    ) -> None:
        self.engine = DispatchEngine(
            self.db,
            transport,
            resolver=self.resolver,
            quota=self.quota,
            state=self.state,
            unsubscribe=self.unsubscribe,
            metrics=self.metrics,
            max_concurrent_sends=max_concurrent_sends,
            max_retries=max_retries,
            retry_delays=retry_delays,
            log_delivery_activity=log_delivery_activity,
            clock=self._clock,
        )
        self.scheduler = CampaignScheduler(
            self.db,
            self.engine,
            self.state,
            tick_interval=tick_interval,
            test_mode=test_mode,
            start_active=start_active,
            clock=self._clock,
        )

    @classmethod
    def from_settings(cls, settings: Settings, transport: MailTransport | None = None) -> CampaignService:
        return cls(
            settings.db_path,
            transport or build_transport(settings.transport),
            quota_policy=settings.quota,
            unsubscribe_secret=settings.unsubscribe_secret,
            unsubscribe_base_url=settings.unsubscribe_base_url,
            max_concurrent_sends=settings.dispatch.max_concurrent_sends,
            max_retries=settings.dispatch.max_retries,
            retry_delays=settings.dispatch.retry_delays,
            tick_interval=settings.dispatch.tick_interval,
            test_mode=settings.dispatch.test_mode,
            start_active=settings.dispatch.start_active,
            log_delivery_activity=settings.dispatch.log_delivery_activity,
        )

    def now(self) -> int:
        return int(self._clock())

    # ----------------------------------------------------------------- lifecycle
    async def init(self) -> None:
        await self.db.init_db()

    async def start(self) -> None:
        """Initialise storage and start the scheduler loop."""
        await self.init()
        if self.scheduler is not None:
            await self.scheduler.start()
        self.logger.info("Campaign service started")

    async def stop(self) -> None:
        if self.scheduler is not None:
            await self.scheduler.stop()
        if self.transport is not None:
            await self.transport.close()
        await self.db.close()

    # ------------------------------------------------------------------ commands
    async def handle_command(self, cmd: str, payload: dict[str, Any] | None = None) -> dict[str, Any]:
        """Execute a command and return ``{"ok": ..., ...}``.

        Domain errors become ``{"ok": False, "error": ..., "code": ...}``;
        store errors propagate.
        """
        payload = payload or {}
        try:
            require_fields(payload, REQUIRED_FIELDS.get(cmd, ()))
            return await self._execute_command(cmd, payload)
        except CampaignMailerError as exc:
            return {"ok": False, "error": str(exc), "code": exc.code}

    async def _execute_command(self, cmd: str, payload: dict[str, Any]) -> dict[str, Any]:
        match cmd:
            case "run now":
                self._require_scheduler().run_now()
                return {"ok": True}
            case "suspend":
                self._require_scheduler().suspend()
                return {"ok": True, "active": False}
            case "activate":
                self._require_scheduler().activate()
                return {"ok": True, "active": True}
            case "status":
                return {"ok": True, "active": bool(self.scheduler and self.scheduler.active)}
            case "tick":
                results = await self._require_scheduler().tick(payload.get("now"))
                return {"ok": True, "results": [r.as_dict() for r in results]}

            # Tenants and billing mirror
            case "addTenant":
                await self.db.add_tenant(payload)
                return {"ok": True}
            case "getTenant":
                return {"ok": True, "tenant": await self.db.require_tenant(payload["tenant_id"])}
            case "listTenants":
                tenants = await self.db.list_tenants(bool(payload.get("active_only")))
                return {"ok": True, "tenants": tenants}
            case "updateTenant":
                tenant_id = payload["tenant_id"]
                await self.db.require_tenant(tenant_id)
                updates = {k: v for k, v in payload.items() if k != "tenant_id"}
                await self.db.tenants.update_fields(tenant_id, updates)
                return {"ok": True, "tenant": await self.db.get_tenant(tenant_id)}
            case "deleteTenant":
                tenant_id = payload["tenant_id"]
                await self.db.require_tenant(tenant_id)
                if not await self.db.delete_tenant(tenant_id):
                    return {"ok": False, "error": "tenant has sent campaigns; history is kept"}
                return {"ok": True}
            case "grantBonus":
                tenant_id = payload["tenant_id"]
                await self.db.require_tenant(tenant_id)
                await self.db.tenants.grant_bonus(tenant_id, int(payload["amount"]), int(payload["expiry_ts"]))
                return {"ok": True, "quota": await self.quota.status(tenant_id, self.now())}
            case "resetCycle":
                tenant_id = payload["tenant_id"]
                await self.db.require_tenant(tenant_id)
                await self.db.tenants.reset_cycle(tenant_id, self.now())
                return {"ok": True, "quota": await self.quota.status(tenant_id, self.now())}
            case "getQuota":
                return {"ok": True, "quota": await self.quota.status(payload["tenant_id"], self.now())}
            case "addAddon":
                await self.db.require_tenant(payload["tenant_id"])
                await self.db.addons.add(payload)
                return {"ok": True}
            case "listAddons":
                return {"ok": True, "addons": await self.db.addons.list_for_tenant(payload["tenant_id"])}
            case "deleteAddon":
                return {"ok": await self.db.addons.remove(payload["id"])}

            # Audience
            case "addContact":
                return await self._add_contact(payload)
            case "importContacts":
                return await self._import_contacts(payload["tenant_id"], payload.get("contacts") or [])
            case "getContact":
                contact = await self._find_contact(payload)
                contact["tag_ids"] = await self.db.contact_tags.tag_ids_for_contact(contact["id"])
                return {"ok": True, "contact": contact}
            case "listContacts":
                contacts = await self.db.contacts.list_for_tenant(payload["tenant_id"], payload.get("status"))
                return {"ok": True, "contacts": contacts}
            case "setContactStatus":
                contact = await self.db.contacts.set_status(
                    int(payload["contact_id"]), payload["status"], self.now()
                )
                return {"ok": True, "contact": contact}
            case "unsubscribeContact":
                changed = await self.db.contacts.unsubscribe(int(payload["contact_id"]), self.now())
                return {"ok": True, "changed": changed}
            case "resubscribeContact":
                await self.db.contacts.resubscribe(int(payload["contact_id"]), self.now())
                return {"ok": True}
            case "deleteContact":
                return {"ok": await self.db.delete_contact(int(payload["contact_id"]))}
            case "addTag":
                return await self._add_tag(payload)
            case "listTags":
                return {"ok": True, "tags": await self.db.tags.list_for_tenant(payload["tenant_id"])}
            case "updateTag":
                changed = await self.db.tags.update_fields(
                    int(payload["tag_id"]), payload.get("name"), payload.get("color")
                )
                return {"ok": changed}
            case "deleteTag":
                return {"ok": await self.db.delete_tag(int(payload["tag_id"]))}
            case "assignTag":
                assigned = await self.db.assign_tag(int(payload["contact_id"]), int(payload["tag_id"]))
                return {"ok": True, "changed": assigned}
            case "unassignTag":
                removed = await self.db.contact_tags.unassign(int(payload["contact_id"]), int(payload["tag_id"]))
                return {"ok": True, "changed": removed}
            case "addTemplate":
                await self.db.require_tenant(payload["tenant_id"])
                template_id = await self.db.templates.add(payload["tenant_id"], payload["name"], payload["html"])
                return {"ok": True, "id": template_id}
            case "listTemplates":
                return {"ok": True, "templates": await self.db.templates.list_for_tenant(payload["tenant_id"])}

            # Campaigns
            case "createCampaign":
                data = {k: v for k, v in payload.items() if k != "tenant_id"}
                campaign_id = await self.state.create(payload["tenant_id"], data)
                return {"ok": True, "campaign": await self.state.get(campaign_id)}
            case "getCampaign":
                return {"ok": True, "campaign": await self.state.get(int(payload["campaign_id"]))}
            case "listCampaigns":
                campaigns = await self.db.campaigns.list_for_tenant(payload["tenant_id"], payload.get("status"))
                return {"ok": True, "campaigns": campaigns}
            case "updateCampaign":
                values = {k: v for k, v in payload.items() if k != "campaign_id"}
                campaign = await self.state.edit(int(payload["campaign_id"]), values)
                return {"ok": True, "campaign": campaign}
            case "previewCampaign":
                campaign = await self.state.get(int(payload["campaign_id"]))
                preview = await self.resolver.preview(campaign["tenant_id"], AudienceFilter.from_campaign(campaign))
                return {"ok": True, **preview.as_dict()}
            case "previewAudience":
                audience = AudienceFilter.build(
                    payload.get("status_filters"),
                    payload.get("included_tag_ids"),
                    payload.get("excluded_tag_ids"),
                    payload.get("excluded_contact_ids"),
                )
                preview = await self.resolver.preview(payload["tenant_id"], audience)
                return {"ok": True, **preview.as_dict()}
            case "scheduleCampaign":
                return await self._schedule(
                    int(payload["campaign_id"]), payload.get("scheduled_for"), bool(payload.get("wait"))
                )
            case "sendNow":
                return await self._send_now(int(payload["campaign_id"]), bool(payload.get("wait")))
            case "unscheduleCampaign":
                await self.state.unschedule(int(payload["campaign_id"]))
                return {"ok": True, "status": CampaignStatus.DRAFT.value}
            case "cancelCampaign":
                await self.state.cancel(int(payload["campaign_id"]))
                return {"ok": True}
            case "campaignStats":
                return {"ok": True, "stats": await self._campaign_stats(int(payload["campaign_id"]))}
            case "listFailures":
                failures = await self.db.campaign_failures.list_for_campaign(int(payload["campaign_id"]))
                return {"ok": True, "failures": failures}

            # Delivery events
            case "recordEvents":
                events = [self._delivery_event(e) for e in payload.get("events") or []]
                return {"ok": True, **await self.tracker.ingest_many(events)}
            case "recordSesNotification":
                return {"ok": True, **await self.tracker.ingest_ses(payload)}
            case "flaggedRecipients":
                return {"ok": True, "recipients": await self.tracker.flagged_recipients(payload["tenant_id"])}
            case "unsubscribeToken":
                return await self._unsubscribe_token(payload["token"])

        return {"ok": False, "error": "unknown command"}

    # ----------------------------------------------------------------- helpers
    def _require_scheduler(self) -> CampaignScheduler:
        if self.scheduler is None:
            raise CampaignMailerError("no mail transport configured")
        return self.scheduler

    async def _find_contact(self, payload: dict[str, Any]) -> dict[str, Any]:
        """Look a contact up by ``contact_id``, or by ``tenant_id`` and ``email``."""
        if payload.get("contact_id") is not None:
            contact = await self.db.contacts.get(int(payload["contact_id"]))
            if not contact:
                raise ContactNotFound(int(payload["contact_id"]))
            return contact
        if payload.get("email") is None:
            raise MissingFieldError("contact_id")
        require_fields(payload, TENANT_ID)
        contact = await self.db.contacts.get_by_email(payload["tenant_id"], payload["email"])
        if not contact:
            raise ContactNotFound(payload["email"])
        return contact

    async def _add_contact(self, payload: dict[str, Any]) -> dict[str, Any]:
        tenant_id = payload["tenant_id"]
        await self.db.require_tenant(tenant_id)
        tag_ids = [int(tag_id) for tag_id in payload.get("tag_ids") or []]
        for tag_id in tag_ids:
            await self.db.tags.require_for_tenant(tag_id, tenant_id)
        contact_id = await self.db.contacts.add(
            tenant_id,
            payload["email"],
            self.now(),
            first_name=payload.get("first_name"),
            last_name=payload.get("last_name"),
            status=payload.get("status") or PENDING,
        )
        for tag_id in tag_ids:
            await self.db.assign_tag(contact_id, tag_id)
        return {"ok": True, "id": contact_id}

    async def _add_tag(self, payload: dict[str, Any]) -> dict[str, Any]:
        tenant_id = payload["tenant_id"]
        await self.db.require_tenant(tenant_id)
        tag_id = await self.db.tags.add(
            tenant_id, payload["name"], payload.get("color"), bool(payload.get("is_system"))
        )
        return {"ok": True, "id": tag_id}

    async def _import_contacts(self, tenant_id: str, rows: list[dict[str, Any]]) -> dict[str, Any]:
        """Add contacts in bulk; tags are referenced by name and created on demand."""
        await self.db.require_tenant(tenant_id)
        tag_ids: dict[str, int] = {}
        imported, skipped, errors = 0, 0, []
        for row in rows:
            email = (row.get("email") or "").strip()
            if not email or "@" not in email:
                errors.append({"email": email, "reason": "invalid email"})
                continue
            try:
                contact_id = await self.db.contacts.add(
                    tenant_id,
                    email,
                    self.now(),
                    first_name=row.get("first_name") or None,
                    last_name=row.get("last_name") or None,
                    status=row.get("status") or PENDING,
                )
            except DuplicateContactError:
                skipped += 1
                continue
            except ContactStateError as exc:
                errors.append({"email": email, "reason": str(exc)})
                continue
            for name in row.get("tags") or []:
                name = name.strip()
                if not name:
                    continue
                if name not in tag_ids:
                    tag_ids[name] = await self._tag_id_for_name(tenant_id, name)
                await self.db.assign_tag(contact_id, tag_ids[name])
            imported += 1
        self.logger.info("Imported %d contacts for tenant %s (%d skipped)", imported, tenant_id, skipped)
        return {"ok": True, "imported": imported, "skipped": skipped, "errors": errors}

    def _delivery_event(self, item: dict[str, Any]) -> DeliveryEvent:
        require_fields(item, ("message_id", "event_type"))
        return DeliveryEvent(
            message_id=item["message_id"],
            event_type=item["event_type"],
            event_ts=int(item.get("event_ts") or self.now()),
            metadata=dict(item.get("metadata") or {}),
        )

    async def _tag_id_for_name(self, tenant_id: str, name: str) -> int:
        tag = await self.db.tags.get_by_name(tenant_id, name)
        if tag:
            return tag["id"]
        try:
            return await self.db.tags.add(tenant_id, name)
        except DuplicateTagError:
            # Created concurrently since the lookup above.
            tag = await self.db.tags.get_by_name(tenant_id, name)
            return tag["id"]

    async def _dispatch(self, campaign_id: int, wait: bool) -> dict[str, Any]:
        scheduler = self._require_scheduler()
        if wait:
            result = await scheduler.engine.dispatch(campaign_id)
            return result.as_dict()
        scheduler.dispatch_in_background(campaign_id)
        return {}

    async def _schedule(self, campaign_id: int, scheduled_for: int | None, wait: bool) -> dict[str, Any]:
        status = await self.state.schedule(campaign_id, scheduled_for, self.now())
        result: dict[str, Any] = {"ok": True, "status": status.value}
        if status is CampaignStatus.SENDING:
            dispatch = await self._dispatch(campaign_id, wait)
            if dispatch:
                result["dispatch"] = dispatch
        return result

    async def _send_now(self, campaign_id: int, wait: bool) -> dict[str, Any]:
        """Start a draft or scheduled campaign immediately."""
        campaign = await self.state.get(campaign_id)
        if campaign["status"] == CampaignStatus.SCHEDULED.value:
            await self.state.validate_configuration(campaign)
            if not await self.state.start_sending(campaign_id, self.now(), override=True):
                return {"ok": False, "error": f"campaign {campaign_id} changed state concurrently"}
            result: dict[str, Any] = {"ok": True, "status": CampaignStatus.SENDING.value}
            dispatch = await self._dispatch(campaign_id, wait)
            if dispatch:
                result["dispatch"] = dispatch
            return result
        return await self._schedule(campaign_id, None, wait)

    async def _campaign_stats(self, campaign_id: int) -> dict[str, Any]:
        campaign = await self.state.get(campaign_id)
        stats: dict[str, Any] = {
            "campaign_id": campaign_id,
            "status": campaign["status"],
            "recipient_count": campaign["recipient_count"],
            "failure_reason": campaign.get("failure_reason"),
        }
        for field in COUNTER_FIELDS:
            stats[field] = campaign[field]
        stats["failed_count"] = len(await self.db.campaign_failures.failed_emails(campaign_id))
        sent = campaign["sent_count"]
        for field in ("delivered", "opened", "clicked", "bounced", "complained"):
            stats[f"{field}_rate"] = round(campaign[f"{field}_count"] / sent, 4) if sent else 0.0
        return stats

    async def _unsubscribe_token(self, token: str) -> dict[str, Any]:
        check = self.unsubscribe.verify(token, self.now())
        if not check.valid:
            return {"ok": False, "error": check.error}
        payload = check.payload or {}
        contact = await self.db.contacts.get(int(payload["contact_id"]))
        if (
            not contact
            or contact["tenant_id"] != payload.get("tenant_id")
            or contact["email"] != payload.get("email")
        ):
            return {"ok": False, "error": "contact_not_found"}
        changed = await self.db.contacts.unsubscribe(contact["id"], self.now())
        if changed:
            self.logger.info("Contact %s unsubscribed via link", contact["id"])
        return {"ok": True, "email": contact["email"], "already_unsubscribed": not changed}
