# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""FastAPI application factory and HTTP schemas for the campaign mailer.

This module provides the REST API of the campaign service:

- Pydantic models defining request/response schemas
- A factory function to create and configure the FastAPI application
- Authentication via API token in the X-API-Token header
- Endpoints for tenants, add-ons, contacts, tags, templates, campaigns and
  delivery events, plus scheduler control and Prometheus metrics

The public ``/unsubscribe`` endpoint is the target of the links embedded in
every campaign email and is authenticated by the signed token itself.

Example:
    Creating and running the API application::

        from campaign_mailer.service import CampaignService
        from campaign_mailer.api import create_app

        svc = CampaignService.from_settings(load_settings())
        app = create_app(svc, api_token="secret-token")

        uvicorn.run(app, host="0.0.0.0", port=8000)
"""

import logging
import secrets
from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from datetime import datetime, timezone
from html import escape
from typing import Annotated, Any, Literal

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import HTMLResponse, JSONResponse, Response
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, BeforeValidator, ConfigDict, Field

from .service import CampaignService


def coerce_epoch(value: Any) -> int | None:
    """Accept epoch seconds or an ISO 8601 string."""
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValueError("Cannot convert bool to timestamp")
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        if value.strip().lstrip("-").isdigit():
            return int(value.strip())
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    else:
        raise ValueError(f"Cannot convert {type(value)} to timestamp")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return int(parsed.timestamp())


FlexibleTimestamp = Annotated[int | None, BeforeValidator(coerce_epoch)]

logger = logging.getLogger(__name__)

app = FastAPI(title="Campaign Mailer")
service: CampaignService | None = None
API_TOKEN_HEADER_NAME = "X-API-Token"
api_key_scheme = APIKeyHeader(name=API_TOKEN_HEADER_NAME, auto_error=False)
app.state.api_token = None

NOT_FOUND_CODES = {"tenant_not_found", "campaign_not_found", "not_found"}
CONFLICT_CODES = {"invalid_state", "duplicate_contact", "duplicate_tag"}


async def require_token(
    request: Request,
    api_token: str | None = Depends(api_key_scheme)
) -> None:
    """Validate the API token carried in the ``X-API-Token`` header."""
    expected = getattr(request.app.state, "api_token", None)
    if expected is None:
        return
    if not api_token or not secrets.compare_digest(api_token, expected):
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid or missing API token")


auth_dependency = Depends(require_token)


class CommandStatus(BaseModel):
    """Base schema shared by most responses produced by the service."""
    ok: bool
    error: str | None = None


class BasicOkResponse(CommandStatus):
    pass


class StatusResponse(CommandStatus):
    """Response from /status endpoint."""

    active: bool = Field(..., description="Whether the scheduler is ticking")


class CommandResponse(CommandStatus):
    """Command result carrying arbitrary extra fields."""

    model_config = ConfigDict(extra="allow")


# --------------------------------------------------------------------- tenants
class TenantPayload(BaseModel):
    """Tenant mirrored from the billing system."""
    id: str
    name: str | None = None
    plan_tier: str | None = None
    timezone: str | None = "UTC"
    active: bool = True


class TenantUpdatePayload(BaseModel):
    """Tenant update payload - all fields optional."""
    name: str | None = None
    plan_tier: str | None = None
    timezone: str | None = None
    active: bool | None = None


class BonusPayload(BaseModel):
    """One-off bonus grant; a new grant replaces the previous one."""
    amount: int = Field(..., ge=0)
    expiry_ts: FlexibleTimestamp = Field(..., description="Epoch seconds or ISO 8601")


class AddonPayload(BaseModel):
    """Add-on subscription; ``access_until`` bounds a cancelled add-on."""
    id: str
    tenant_id: str
    product_id: str
    status: Literal["active", "cancelled"] = "active"
    access_until: FlexibleTimestamp = None


# -------------------------------------------------------------------- audience
class ContactPayload(BaseModel):
    tenant_id: str
    email: str = Field(..., min_length=3)
    first_name: str | None = None
    last_name: str | None = None
    status: Literal["pending", "active", "confirmed"] = "pending"
    tag_ids: list[int] = Field(default_factory=list)


class ImportContact(BaseModel):
    email: str
    first_name: str | None = None
    last_name: str | None = None
    status: Literal["pending", "active", "confirmed"] | None = None
    tags: list[str] = Field(default_factory=list)


class ImportContactsPayload(BaseModel):
    tenant_id: str
    contacts: list[ImportContact]


class ContactStatusPayload(BaseModel):
    status: Literal["active", "confirmed"]


class TagPayload(BaseModel):
    tenant_id: str
    name: str = Field(..., min_length=1)
    color: str | None = None
    is_system: bool = False


class TagUpdatePayload(BaseModel):
    name: str | None = None
    color: str | None = None


class TemplatePayload(BaseModel):
    tenant_id: str
    name: str
    html: str


# ------------------------------------------------------------------- campaigns
class AudienceFields(BaseModel):
    """Tag and status filters; lists are treated as sets."""
    included_tag_ids: list[int] | None = None
    excluded_tag_ids: list[int] | None = None
    excluded_contact_ids: list[int] | None = None
    status_filters: list[Literal["pending", "active", "confirmed", "unsubscribed"]] | None = None


class CampaignPayload(AudienceFields):
    """Draft campaign definition."""
    tenant_id: str
    title: str | None = None
    description: str | None = None
    subject: str | None = None
    message: str | None = None
    template_id: int | None = None
    body_html: str | None = None
    sender_email: str | None = None
    sender_name: str | None = None
    language: str | None = None


class CampaignUpdatePayload(AudienceFields):
    """Draft update payload - all fields optional."""
    title: str | None = None
    description: str | None = None
    subject: str | None = None
    message: str | None = None
    template_id: int | None = None
    body_html: str | None = None
    sender_email: str | None = None
    sender_name: str | None = None
    language: str | None = None


class AudiencePreviewPayload(AudienceFields):
    tenant_id: str


class SchedulePayload(BaseModel):
    scheduled_for: FlexibleTimestamp = Field(
        None, description="Epoch seconds or ISO 8601; empty or past sends now"
    )
    wait: bool = False


class SendNowPayload(BaseModel):
    wait: bool = False


class DeliveryEventPayload(BaseModel):
    message_id: str
    event_type: str
    event_ts: FlexibleTimestamp = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class DeliveryEventsPayload(BaseModel):
    events: list[DeliveryEventPayload]


def _unsubscribe_page(title: str, message: str, status_code: int = 200) -> HTMLResponse:
    body = (
        "<!DOCTYPE html><html><head><meta charset=\"utf-8\">"
        f"<title>{escape(title)}</title></head>"
        f"<body><h1>{escape(title)}</h1><p>{escape(message)}</p></body></html>"
    )
    return HTMLResponse(content=body, status_code=status_code)


def create_app(
    svc: CampaignService,
    api_token: str | None = None,
    lifespan: Callable[[FastAPI], AbstractAsyncContextManager] | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    svc:
        Instance of :class:`campaign_mailer.service.CampaignService` that
        implements the business logic for each command.
    api_token:
        Optional secret used to protect every endpoint except ``/health``
        and ``/unsubscribe``.
    lifespan:
        Optional lifespan context manager for startup/shutdown events.

    Returns
    -------
    FastAPI
        A configured application ready to be served by Uvicorn.
    """
    global service
    service = svc

    api = FastAPI(title="Campaign Mailer", lifespan=lifespan) if lifespan is not None else app

    api.state.api_token = api_token
    router = APIRouter(prefix="/commands", tags=["commands"], dependencies=[auth_dependency])

    @api.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Log request validation errors and return them as 422."""
        body = await request.body()
        logger.error(f"Validation error on {request.method} {request.url.path}")
        logger.error(f"Request body: {body.decode('utf-8', errors='replace')}")
        logger.error(f"Validation errors: {exc.errors()}")
        return JSONResponse(
            status_code=422,
            content={"detail": exc.errors()}
        )

    async def run_command(cmd: str, payload: dict[str, Any]) -> dict[str, Any]:
        """Execute a service command, mapping failures to HTTP errors."""
        if not service:
            raise HTTPException(500, "Service not initialized")
        result = await service.handle_command(cmd, payload)
        if not result.get("ok"):
            code = result.get("code")
            if code in NOT_FOUND_CODES:
                raise HTTPException(404, result.get("error"))
            if code in CONFLICT_CODES:
                raise HTTPException(409, result.get("error"))
            raise HTTPException(400, result.get("error", "Unknown error"))
        return result

    @api.get("/health")
    async def health():
        """Health check endpoint for container orchestration and load balancers.

        Does not require authentication.
        """
        return {"status": "ok"}

    @api.get("/status", response_model=StatusResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def get_status():
        """Return authenticated service status and whether the scheduler is active."""
        result = await run_command("status", {})
        return StatusResponse.model_validate(result)

    @api.get("/metrics", dependencies=[auth_dependency])
    async def metrics():
        """Export Prometheus metrics in text exposition format."""
        if not service:
            raise HTTPException(500, "Service not initialized")
        return Response(content=service.metrics.generate_latest(), media_type="text/plain; version=0.0.4")

    # Scheduler control
    @router.post("/run-now", response_model=BasicOkResponse, response_model_exclude_none=True)
    async def run_now():
        """Wake the scheduler for an immediate tick."""
        return BasicOkResponse.model_validate(await run_command("run now", {}))

    @router.post("/suspend", response_model=StatusResponse, response_model_exclude_none=True)
    async def suspend():
        """Stop ticking; campaigns already dispatching keep going."""
        return StatusResponse.model_validate(await run_command("suspend", {}))

    @router.post("/activate", response_model=StatusResponse, response_model_exclude_none=True)
    async def activate():
        return StatusResponse.model_validate(await run_command("activate", {}))

    @router.post("/tick", response_model=CommandResponse, response_model_exclude_none=True)
    async def tick():
        """Run one scheduler tick inline and return the dispatch results."""
        return CommandResponse.model_validate(await run_command("tick", {}))

    # Tenant endpoints
    @api.post("/tenant", response_model=BasicOkResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def add_tenant(payload: TenantPayload):
        """Register or update a tenant. Usage counters are preserved."""
        return BasicOkResponse.model_validate(await run_command("addTenant", payload.model_dump()))

    @api.get("/tenants", response_model=CommandResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def list_tenants(active_only: bool = False):
        return CommandResponse.model_validate(await run_command("listTenants", {"active_only": active_only}))

    @api.get("/tenant/{tenant_id}", response_model=CommandResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def get_tenant(tenant_id: str):
        return CommandResponse.model_validate(await run_command("getTenant", {"tenant_id": tenant_id}))

    @api.put("/tenant/{tenant_id}", response_model=CommandResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def update_tenant(tenant_id: str, payload: TenantUpdatePayload):
        """Apply a partial update; omitted fields keep their values."""
        update_data = payload.model_dump(exclude_none=True)
        update_data["tenant_id"] = tenant_id
        return CommandResponse.model_validate(await run_command("updateTenant", update_data))

    @api.delete("/tenant/{tenant_id}", response_model=BasicOkResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def delete_tenant(tenant_id: str):
        """Delete a tenant and its audience. Refused once campaigns were sent."""
        return BasicOkResponse.model_validate(await run_command("deleteTenant", {"tenant_id": tenant_id}))

    @api.post("/tenant/{tenant_id}/bonus", response_model=CommandResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def grant_bonus(tenant_id: str, payload: BonusPayload):
        data = payload.model_dump()
        data["tenant_id"] = tenant_id
        return CommandResponse.model_validate(await run_command("grantBonus", data))

    @api.post("/tenant/{tenant_id}/reset-cycle", response_model=CommandResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def reset_cycle(tenant_id: str):
        """Start a new billing cycle: zero the per-cycle counter."""
        return CommandResponse.model_validate(await run_command("resetCycle", {"tenant_id": tenant_id}))

    @api.get("/tenant/{tenant_id}/quota", response_model=CommandResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def get_quota(tenant_id: str):
        """Current allowance, usage and remaining emails for the cycle."""
        return CommandResponse.model_validate(await run_command("getQuota", {"tenant_id": tenant_id}))

    @api.get("/tenant/{tenant_id}/flagged", response_model=CommandResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def flagged_recipients(tenant_id: str):
        """Hard-bounced and complaining recipients for suppression upstream."""
        return CommandResponse.model_validate(await run_command("flaggedRecipients", {"tenant_id": tenant_id}))

    # Add-on endpoints
    @api.post("/addon", response_model=BasicOkResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def add_addon(payload: AddonPayload):
        return BasicOkResponse.model_validate(await run_command("addAddon", payload.model_dump()))

    @api.get("/tenant/{tenant_id}/addons", response_model=CommandResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def list_addons(tenant_id: str):
        return CommandResponse.model_validate(await run_command("listAddons", {"tenant_id": tenant_id}))

    @api.delete("/addon/{addon_id}", response_model=BasicOkResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def delete_addon(addon_id: str):
        return BasicOkResponse.model_validate(await run_command("deleteAddon", {"id": addon_id}))

    # Contact endpoints
    @api.post("/contact", response_model=CommandResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def add_contact(payload: ContactPayload):
        return CommandResponse.model_validate(await run_command("addContact", payload.model_dump()))

    @api.post("/contacts/import", response_model=CommandResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def import_contacts(payload: ImportContactsPayload):
        """Bulk import; duplicates are skipped, tags are created by name."""
        return CommandResponse.model_validate(await run_command("importContacts", payload.model_dump()))

    @api.get("/contacts", response_model=CommandResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def list_contacts(tenant_id: str, status: str | None = None):
        return CommandResponse.model_validate(
            await run_command("listContacts", {"tenant_id": tenant_id, "status": status})
        )

    @api.get("/contacts/lookup", response_model=CommandResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def lookup_contact(tenant_id: str, email: str):
        return CommandResponse.model_validate(
            await run_command("getContact", {"tenant_id": tenant_id, "email": email})
        )

    @api.get("/contact/{contact_id}", response_model=CommandResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def get_contact(contact_id: int):
        return CommandResponse.model_validate(await run_command("getContact", {"contact_id": contact_id}))

    @api.put("/contact/{contact_id}/status", response_model=CommandResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def set_contact_status(contact_id: int, payload: ContactStatusPayload):
        return CommandResponse.model_validate(
            await run_command("setContactStatus", {"contact_id": contact_id, "status": payload.status})
        )

    @api.post("/contact/{contact_id}/unsubscribe", response_model=CommandResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def unsubscribe_contact(contact_id: int):
        return CommandResponse.model_validate(await run_command("unsubscribeContact", {"contact_id": contact_id}))

    @api.post("/contact/{contact_id}/resubscribe", response_model=BasicOkResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def resubscribe_contact(contact_id: int):
        return BasicOkResponse.model_validate(await run_command("resubscribeContact", {"contact_id": contact_id}))

    @api.delete("/contact/{contact_id}", response_model=BasicOkResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def delete_contact(contact_id: int):
        return BasicOkResponse.model_validate(await run_command("deleteContact", {"contact_id": contact_id}))

    @api.post("/contact/{contact_id}/tags/{tag_id}", response_model=CommandResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def assign_tag(contact_id: int, tag_id: int):
        return CommandResponse.model_validate(
            await run_command("assignTag", {"contact_id": contact_id, "tag_id": tag_id})
        )

    @api.delete("/contact/{contact_id}/tags/{tag_id}", response_model=CommandResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def unassign_tag(contact_id: int, tag_id: int):
        return CommandResponse.model_validate(
            await run_command("unassignTag", {"contact_id": contact_id, "tag_id": tag_id})
        )

    # Tag and template endpoints
    @api.post("/tag", response_model=CommandResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def add_tag(payload: TagPayload):
        return CommandResponse.model_validate(await run_command("addTag", payload.model_dump()))

    @api.get("/tags", response_model=CommandResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def list_tags(tenant_id: str):
        return CommandResponse.model_validate(await run_command("listTags", {"tenant_id": tenant_id}))

    @api.put("/tag/{tag_id}", response_model=BasicOkResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def update_tag(tag_id: int, payload: TagUpdatePayload):
        data = payload.model_dump(exclude_none=True)
        data["tag_id"] = tag_id
        return BasicOkResponse.model_validate(await run_command("updateTag", data))

    @api.delete("/tag/{tag_id}", response_model=BasicOkResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def delete_tag(tag_id: int):
        """Delete a tag. System tags are protected."""
        return BasicOkResponse.model_validate(await run_command("deleteTag", {"tag_id": tag_id}))

    @api.post("/template", response_model=CommandResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def add_template(payload: TemplatePayload):
        return CommandResponse.model_validate(await run_command("addTemplate", payload.model_dump()))

    @api.get("/templates", response_model=CommandResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def list_templates(tenant_id: str):
        return CommandResponse.model_validate(await run_command("listTemplates", {"tenant_id": tenant_id}))

    # Campaign endpoints
    @api.post("/campaign", response_model=CommandResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def create_campaign(payload: CampaignPayload):
        """Create a draft campaign."""
        return CommandResponse.model_validate(
            await run_command("createCampaign", payload.model_dump(exclude_none=True))
        )

    @api.get("/campaigns", response_model=CommandResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def list_campaigns(tenant_id: str, status: str | None = None):
        return CommandResponse.model_validate(
            await run_command("listCampaigns", {"tenant_id": tenant_id, "status": status})
        )

    @api.get("/campaign/{campaign_id}", response_model=CommandResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def get_campaign(campaign_id: int):
        return CommandResponse.model_validate(await run_command("getCampaign", {"campaign_id": campaign_id}))

    @api.put("/campaign/{campaign_id}", response_model=CommandResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def update_campaign(campaign_id: int, payload: CampaignUpdatePayload):
        """Edit a draft. Anything past draft answers 409."""
        data = payload.model_dump(exclude_unset=True)
        data["campaign_id"] = campaign_id
        return CommandResponse.model_validate(await run_command("updateCampaign", data))

    @api.delete("/campaign/{campaign_id}", response_model=BasicOkResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def cancel_campaign(campaign_id: int):
        """Cancel (delete) a draft or scheduled campaign."""
        return BasicOkResponse.model_validate(await run_command("cancelCampaign", {"campaign_id": campaign_id}))

    @api.get("/campaign/{campaign_id}/preview", response_model=CommandResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def preview_campaign(campaign_id: int):
        """Recipient count and sample for the campaign's current filters."""
        return CommandResponse.model_validate(await run_command("previewCampaign", {"campaign_id": campaign_id}))

    @api.post("/audience/preview", response_model=CommandResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def preview_audience(payload: AudiencePreviewPayload):
        return CommandResponse.model_validate(await run_command("previewAudience", payload.model_dump()))

    @api.post("/campaign/{campaign_id}/schedule", response_model=CommandResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def schedule_campaign(campaign_id: int, payload: SchedulePayload):
        """Schedule a draft; an empty or past time starts sending now."""
        data = payload.model_dump()
        data["campaign_id"] = campaign_id
        return CommandResponse.model_validate(await run_command("scheduleCampaign", data))

    @api.post("/campaign/{campaign_id}/send-now", response_model=CommandResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def send_now(campaign_id: int, payload: SendNowPayload | None = None):
        """Start a draft or scheduled campaign immediately."""
        wait = payload.wait if payload else False
        return CommandResponse.model_validate(
            await run_command("sendNow", {"campaign_id": campaign_id, "wait": wait})
        )

    @api.post("/campaign/{campaign_id}/unschedule", response_model=CommandResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def unschedule_campaign(campaign_id: int):
        return CommandResponse.model_validate(await run_command("unscheduleCampaign", {"campaign_id": campaign_id}))

    @api.get("/campaign/{campaign_id}/stats", response_model=CommandResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def campaign_stats(campaign_id: int):
        return CommandResponse.model_validate(await run_command("campaignStats", {"campaign_id": campaign_id}))

    @api.get("/campaign/{campaign_id}/failures", response_model=CommandResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def campaign_failures(campaign_id: int):
        return CommandResponse.model_validate(await run_command("listFailures", {"campaign_id": campaign_id}))

    # Delivery events
    @api.post("/events", response_model=CommandResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def record_events(payload: DeliveryEventsPayload):
        """Ingest provider delivery events keyed by provider message id."""
        return CommandResponse.model_validate(await run_command("recordEvents", payload.model_dump()))

    @api.post("/events/ses", response_model=CommandResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def record_ses_notification(request: Request):
        """Ingest an Amazon SES event record, bare or wrapped in SNS."""
        try:
            payload = await request.json()
        except ValueError as exc:
            raise HTTPException(400, "Invalid JSON body") from exc
        if not isinstance(payload, dict):
            raise HTTPException(400, "Expected a JSON object")
        return CommandResponse.model_validate(await run_command("recordSesNotification", payload))

    # Public unsubscribe endpoint
    @api.api_route("/unsubscribe", methods=["GET", "POST"], response_class=HTMLResponse)
    async def unsubscribe(token: str):
        """Unsubscribe link target; POST serves RFC 8058 one-click requests."""
        if not service:
            raise HTTPException(500, "Service not initialized")
        result = await service.handle_command("unsubscribeToken", {"token": token})
        if not result.get("ok"):
            logger.info(f"Rejected unsubscribe token: {result.get('error')}")
            return _unsubscribe_page("Invalid link", "This unsubscribe link is invalid or has expired.", 400)
        return _unsubscribe_page("Unsubscribed", f"{result['email']} will no longer receive our newsletters.")

    api.include_router(router)
    return api
