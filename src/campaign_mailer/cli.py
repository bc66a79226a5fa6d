# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Command-line interface for campaign-mailer.

This module provides a CLI for managing tenants, audiences and campaigns
directly against the database, without going through the HTTP API.

Usage:
    campaign-mailer tenants add acme --name "ACME" --tier essential
    campaign-mailer tenants quota acme
    campaign-mailer contacts import acme contacts.csv
    campaign-mailer campaigns preview 12
    campaign-mailer campaigns send-now 12
    campaign-mailer tick
    campaign-mailer serve --port 8000

Example:
    $ campaign-mailer --db /data/campaigns.db tenants grant-bonus acme 5000 \\
        --expires 2025-12-31T23:59:59Z
"""

from __future__ import annotations

import asyncio
import csv
import json
import os
import sys
from typing import Any

import click
from rich.console import Console
from rich.table import Table

from campaign_mailer.api import coerce_epoch
from campaign_mailer.config_loader import Settings, load_settings
from campaign_mailer.service import CampaignService
from campaign_mailer.transport import build_transport

console = Console()
err_console = Console(stderr=True)

TAG_SEPARATORS = (";", "|")


def run_async(coro):
    """Execute an async coroutine synchronously from CLI context."""
    return asyncio.run(coro)


def print_error(message: str) -> None:
    """Print a formatted error message to stderr."""
    err_console.print(f"[red]Error:[/red] {message}")


def print_success(message: str) -> None:
    console.print(f"[green]✓[/green] {message}")


def print_json(data: Any) -> None:
    """Print data as syntax-highlighted JSON."""
    console.print_json(json.dumps(data, indent=2, default=str))


def _build_service(settings: Settings, with_transport: bool) -> CampaignService:
    transport = build_transport(settings.transport) if with_transport else None
    return CampaignService(
        settings.db_path,
        transport,
        quota_policy=settings.quota,
        unsubscribe_secret=settings.unsubscribe_secret,
        unsubscribe_base_url=settings.unsubscribe_base_url,
        max_concurrent_sends=settings.dispatch.max_concurrent_sends,
        max_retries=settings.dispatch.max_retries,
        retry_delays=settings.dispatch.retry_delays,
        test_mode=True,
        log_delivery_activity=settings.dispatch.log_delivery_activity,
    )


def execute(ctx: click.Context, cmd: str, payload: dict[str, Any], with_transport: bool = False) -> dict[str, Any]:
    """Run one service command against the configured database.

    Exits with status 1 and prints the error when the command fails.
    """
    settings: Settings = ctx.obj["settings"]

    async def _run() -> dict[str, Any]:
        service = _build_service(settings, with_transport)
        try:
            await service.init()
            return await service.handle_command(cmd, payload)
        finally:
            await service.stop()

    result = run_async(_run())
    if not result.get("ok"):
        print_error(result.get("error") or f"{cmd} failed")
        sys.exit(1)
    return result


def _parse_ts(value: str | None) -> int | None:
    if value is None:
        return None
    try:
        return coerce_epoch(value)
    except ValueError as exc:
        raise click.BadParameter(f"invalid timestamp '{value}'") from exc


def _print_dispatch(dispatch: dict[str, Any] | None) -> None:
    if not dispatch:
        return
    console.print(
        f"  Outcome: [bold]{dispatch['outcome']}[/bold]  sent={dispatch['sent']} "
        f"failed={dispatch['failed']} already_done={dispatch['already_done']}"
    )
    if dispatch.get("reason"):
        console.print(f"  Reason:  {dispatch['reason']}")


@click.group()
@click.version_option(package_name="campaign-mailer")
@click.option("--config", "config_path", envvar="CMP_CONFIG", default=None, help="Path to config.ini.")
@click.option("--db", "db_path", envvar="CMP_DB_PATH", default=None, help="Database path or postgresql:// URL.")
@click.pass_context
def main(ctx: click.Context, config_path: str | None, db_path: str | None) -> None:
    """campaign-mailer: newsletter targeting and quota-gated dispatch."""
    settings = load_settings(config_path)
    if db_path:
        settings.db_path = db_path
    ctx.ensure_object(dict)
    ctx.obj["settings"] = settings


# ============================================================================
# Tenants
# ============================================================================

@main.group("tenants")
def tenants() -> None:
    """Manage tenants and their email allowance."""


@tenants.command("add")
@click.argument("tenant_id")
@click.option("--name", "-n", help="Human-readable tenant name.")
@click.option("--tier", "plan_tier", help="Plan tier (e.g. essential, pro).")
@click.option("--timezone", "tz", default="UTC", show_default=True, help="IANA timezone.")
@click.option("--inactive", is_flag=True, help="Create tenant as inactive.")
@click.pass_context
def tenants_add(ctx: click.Context, tenant_id: str, name: str | None, plan_tier: str | None, tz: str, inactive: bool) -> None:
    """Add or update a tenant."""
    payload = {"id": tenant_id, "name": name, "plan_tier": plan_tier, "timezone": tz, "active": not inactive}
    execute(ctx, "addTenant", payload)
    print_success(f"Tenant '{tenant_id}' saved.")


@tenants.command("list")
@click.option("--active-only", "-a", is_flag=True, help="Show only active tenants.")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def tenants_list(ctx: click.Context, active_only: bool, as_json: bool) -> None:
    """List all tenants."""
    tenants_data = execute(ctx, "listTenants", {"active_only": active_only})["tenants"]
    if as_json:
        print_json(tenants_data)
        return
    if not tenants_data:
        console.print("[dim]No tenants found.[/dim]")
        return
    table = Table(title="Tenants")
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Tier")
    table.add_column("Sent this cycle", justify="right")
    table.add_column("Active")
    for t in tenants_data:
        table.add_row(
            t["id"],
            t.get("name") or "-",
            t.get("plan_tier") or "-",
            str(t.get("emails_sent_this_cycle") or 0),
            "[green]yes[/green]" if t.get("active") else "[red]no[/red]",
        )
    console.print(table)


@tenants.command("quota")
@click.argument("tenant_id")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def tenants_quota(ctx: click.Context, tenant_id: str, as_json: bool) -> None:
    """Show the allowance breakdown and usage for this cycle."""
    quota = execute(ctx, "getQuota", {"tenant_id": tenant_id})["quota"]
    if as_json:
        print_json(quota)
        return
    console.print(f"\n[bold cyan]Quota: {tenant_id}[/bold cyan]\n")
    console.print(f"  Tier:        {quota.get('plan_tier') or '-'}")
    if quota.get("unlimited"):
        console.print("  Allowance:   unlimited")
    else:
        console.print(f"  Base:        {quota['base']}")
        console.print(f"  Add-ons:     {quota['addons']}")
        console.print(f"  Bonus:       {quota['bonus']}")
        console.print(f"  Allowance:   {quota['allowance']}")
    console.print(f"  Sent:        {quota['sent_this_cycle']}")
    remaining = quota.get("remaining")
    console.print(f"  Remaining:   {'unlimited' if remaining is None else remaining}")
    console.print()


@tenants.command("grant-bonus")
@click.argument("tenant_id")
@click.argument("amount", type=int)
@click.option("--expires", required=True, help="Expiry as epoch seconds or ISO 8601.")
@click.pass_context
def tenants_grant_bonus(ctx: click.Context, tenant_id: str, amount: int, expires: str) -> None:
    """Grant a one-off bonus, replacing any previous grant."""
    if amount < 0:
        raise click.BadParameter("amount must be >= 0")
    execute(ctx, "grantBonus", {"tenant_id": tenant_id, "amount": amount, "expiry_ts": _parse_ts(expires)})
    print_success(f"Granted {amount} bonus emails to '{tenant_id}'.")


@tenants.command("reset-cycle")
@click.argument("tenant_id")
@click.pass_context
def tenants_reset_cycle(ctx: click.Context, tenant_id: str) -> None:
    """Zero the per-cycle usage counter (billing renewal)."""
    execute(ctx, "resetCycle", {"tenant_id": tenant_id})
    print_success(f"Usage cycle reset for '{tenant_id}'.")


# ============================================================================
# Add-ons
# ============================================================================

@main.group("addons")
def addons() -> None:
    """Mirror add-on subscriptions from billing."""


@addons.command("add")
@click.argument("subscription_id")
@click.option("--tenant", "tenant_id", required=True, help="Owning tenant.")
@click.option("--product", "product_id", required=True, help="Add-on product id.")
@click.option("--status", type=click.Choice(["active", "cancelled"]), default="active", show_default=True)
@click.option("--access-until", help="End of the paid period (epoch or ISO 8601).")
@click.pass_context
def addons_add(
    ctx: click.Context,
    subscription_id: str,
    tenant_id: str,
    product_id: str,
    status: str,
    access_until: str | None,
) -> None:
    """Add or update an add-on subscription."""
    payload = {
        "id": subscription_id,
        "tenant_id": tenant_id,
        "product_id": product_id,
        "status": status,
        "access_until": _parse_ts(access_until),
    }
    execute(ctx, "addAddon", payload)
    print_success(f"Add-on '{subscription_id}' saved.")


# ============================================================================
# Contacts
# ============================================================================

@main.group("contacts")
def contacts() -> None:
    """Manage a tenant's contacts."""


@contacts.command("add")
@click.argument("tenant_id")
@click.argument("email")
@click.option("--first-name", help="First name.")
@click.option("--last-name", help="Last name.")
@click.option("--status", type=click.Choice(["pending", "active", "confirmed"]), default="pending", show_default=True)
@click.option("--tag", "tag_ids", type=int, multiple=True, help="Tag id to assign (repeatable).")
@click.pass_context
def contacts_add(
    ctx: click.Context,
    tenant_id: str,
    email: str,
    first_name: str | None,
    last_name: str | None,
    status: str,
    tag_ids: tuple[int, ...],
) -> None:
    """Add a contact."""
    payload = {
        "tenant_id": tenant_id,
        "email": email,
        "first_name": first_name,
        "last_name": last_name,
        "status": status,
        "tag_ids": list(tag_ids),
    }
    result = execute(ctx, "addContact", payload)
    print_success(f"Contact {email} added (id {result['id']}).")


@contacts.command("list")
@click.argument("tenant_id")
@click.option("--status", type=click.Choice(["pending", "active", "confirmed", "unsubscribed"]), help="Filter by status.")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def contacts_list(ctx: click.Context, tenant_id: str, status: str | None, as_json: bool) -> None:
    """List contacts of a tenant."""
    contacts_data = execute(ctx, "listContacts", {"tenant_id": tenant_id, "status": status})["contacts"]
    if as_json:
        print_json(contacts_data)
        return
    if not contacts_data:
        console.print("[dim]No contacts found.[/dim]")
        return
    table = Table(title=f"Contacts for {tenant_id}")
    table.add_column("ID", justify="right")
    table.add_column("Email", style="cyan")
    table.add_column("Name")
    table.add_column("Status")
    for c in contacts_data:
        name = " ".join(part for part in (c.get("first_name"), c.get("last_name")) if part)
        table.add_row(str(c["id"]), c["email"], name or "-", c["status"])
    console.print(table)


@contacts.command("import")
@click.argument("tenant_id")
@click.argument("csv_file", type=click.File("r", encoding="utf-8"))
@click.pass_context
def contacts_import(ctx: click.Context, tenant_id: str, csv_file) -> None:
    """Import contacts from a CSV file.

    Columns: email (required), first_name, last_name, status, tags. Tags
    are names separated by ';' or '|' and are created when missing.
    """
    reader = csv.DictReader(csv_file)
    if not reader.fieldnames or "email" not in reader.fieldnames:
        print_error("CSV file must have an 'email' column.")
        sys.exit(1)
    rows = []
    for record in reader:
        tags_field = record.get("tags") or ""
        for sep in TAG_SEPARATORS:
            tags_field = tags_field.replace(sep, ",")
        rows.append(
            {
                "email": record.get("email") or "",
                "first_name": record.get("first_name") or None,
                "last_name": record.get("last_name") or None,
                "status": record.get("status") or None,
                "tags": [t.strip() for t in tags_field.split(",") if t.strip()],
            }
        )
    result = execute(ctx, "importContacts", {"tenant_id": tenant_id, "contacts": rows})
    print_success(f"Imported {result['imported']} contacts ({result['skipped']} already present).")
    for error in result["errors"]:
        err_console.print(f"  [yellow]{error['email'] or '<empty>'}[/yellow]: {error['reason']}")


@contacts.command("unsubscribe")
@click.argument("contact_id", type=int)
@click.pass_context
def contacts_unsubscribe(ctx: click.Context, contact_id: int) -> None:
    """Unsubscribe a contact."""
    result = execute(ctx, "unsubscribeContact", {"contact_id": contact_id})
    if result.get("changed"):
        print_success(f"Contact {contact_id} unsubscribed.")
    else:
        console.print(f"Contact {contact_id} was already unsubscribed.")


# ============================================================================
# Tags
# ============================================================================

@main.group("tags")
def tags() -> None:
    """Manage a tenant's tags."""


@tags.command("add")
@click.argument("tenant_id")
@click.argument("name")
@click.option("--color", help="CSS classes for the tag badge.")
@click.pass_context
def tags_add(ctx: click.Context, tenant_id: str, name: str, color: str | None) -> None:
    result = execute(ctx, "addTag", {"tenant_id": tenant_id, "name": name, "color": color})
    print_success(f"Tag '{name}' added (id {result['id']}).")


@tags.command("list")
@click.argument("tenant_id")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def tags_list(ctx: click.Context, tenant_id: str, as_json: bool) -> None:
    tags_data = execute(ctx, "listTags", {"tenant_id": tenant_id})["tags"]
    if as_json:
        print_json(tags_data)
        return
    table = Table(title=f"Tags for {tenant_id}")
    table.add_column("ID", justify="right")
    table.add_column("Name", style="cyan")
    table.add_column("System")
    for t in tags_data:
        table.add_row(str(t["id"]), t["name"], "yes" if t.get("is_system") else "")
    console.print(table)


# ============================================================================
# Campaigns
# ============================================================================

@main.group("campaigns")
def campaigns() -> None:
    """Inspect, preview and send campaigns."""


@campaigns.command("list")
@click.argument("tenant_id")
@click.option("--status", type=click.Choice(["draft", "scheduled", "sending", "sent", "failed"]))
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def campaigns_list(ctx: click.Context, tenant_id: str, status: str | None, as_json: bool) -> None:
    """List campaigns of a tenant."""
    campaigns_data = execute(ctx, "listCampaigns", {"tenant_id": tenant_id, "status": status})["campaigns"]
    if as_json:
        print_json(campaigns_data)
        return
    if not campaigns_data:
        console.print("[dim]No campaigns found.[/dim]")
        return
    table = Table(title=f"Campaigns for {tenant_id}")
    table.add_column("ID", justify="right")
    table.add_column("Title", style="cyan")
    table.add_column("Status")
    table.add_column("Recipients", justify="right")
    table.add_column("Sent", justify="right")
    for c in campaigns_data:
        table.add_row(
            str(c["id"]),
            c.get("title") or c.get("subject") or "-",
            c["status"],
            str(c.get("recipient_count") or 0),
            str(c.get("sent_count") or 0),
        )
    console.print(table)


@campaigns.command("show")
@click.argument("campaign_id", type=int)
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def campaigns_show(ctx: click.Context, campaign_id: int, as_json: bool) -> None:
    """Show a campaign with its delivery statistics."""
    stats = execute(ctx, "campaignStats", {"campaign_id": campaign_id})["stats"]
    if as_json:
        print_json(stats)
        return
    console.print(f"\n[bold cyan]Campaign {campaign_id}[/bold cyan]\n")
    console.print(f"  Status:      {stats['status']}")
    if stats.get("failure_reason"):
        console.print(f"  Reason:      [red]{stats['failure_reason']}[/red]")
    console.print(f"  Recipients:  {stats['recipient_count']}")
    console.print(f"  Sent:        {stats['sent_count']}")
    console.print(f"  Failed:      {stats['failed_count']}")
    console.print(f"  Delivered:   {stats['delivered_count']}")
    console.print(f"  Opened:      {stats['opened_count']}")
    console.print(f"  Clicked:     {stats['clicked_count']}")
    console.print(f"  Bounced:     {stats['bounced_count']}")
    console.print(f"  Complained:  {stats['complained_count']}")
    console.print()


@campaigns.command("preview")
@click.argument("campaign_id", type=int)
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def campaigns_preview(ctx: click.Context, campaign_id: int, as_json: bool) -> None:
    """Show who the campaign would be sent to right now."""
    result = execute(ctx, "previewCampaign", {"campaign_id": campaign_id})
    if as_json:
        result.pop("ok", None)
        print_json(result)
        return
    console.print(
        f"{result['recipient_count']} recipient(s), {result['excluded_count']} excluded by tag or contact"
    )
    for r in result["recipients"]:
        console.print(f"  {r['email']}")


@campaigns.command("schedule")
@click.argument("campaign_id", type=int)
@click.option("--at", "at", help="Send time (epoch or ISO 8601); omit to send now.")
@click.pass_context
def campaigns_schedule(ctx: click.Context, campaign_id: int, at: str | None) -> None:
    """Schedule a draft campaign; a past or empty time sends immediately."""
    scheduled_for = _parse_ts(at)
    result = execute(
        ctx,
        "scheduleCampaign",
        {"campaign_id": campaign_id, "scheduled_for": scheduled_for, "wait": True},
        with_transport=True,
    )
    print_success(f"Campaign {campaign_id} is {result['status']}.")
    _print_dispatch(result.get("dispatch"))


@campaigns.command("send-now")
@click.argument("campaign_id", type=int)
@click.pass_context
def campaigns_send_now(ctx: click.Context, campaign_id: int) -> None:
    """Send a draft or scheduled campaign immediately and wait for the walk."""
    result = execute(ctx, "sendNow", {"campaign_id": campaign_id, "wait": True}, with_transport=True)
    print_success(f"Campaign {campaign_id} is {result['status']}.")
    _print_dispatch(result.get("dispatch"))


# ============================================================================
# Scheduler and server
# ============================================================================

@main.command("tick")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def tick(ctx: click.Context, as_json: bool) -> None:
    """Run one scheduler tick: start due campaigns and resume interrupted ones."""
    results = execute(ctx, "tick", {}, with_transport=True)["results"]
    if as_json:
        print_json(results)
        return
    if not results:
        console.print("[dim]Nothing to dispatch.[/dim]")
        return
    for r in results:
        console.print(f"Campaign {r['campaign_id']}:")
        _print_dispatch(r)


@main.command("serve")
@click.option("--host", "-h", default=None, help="Host to bind to.")
@click.option("--port", "-p", type=int, default=None, help="Port to listen on.")
@click.option("--reload", is_flag=True, help="Enable auto-reload for development.")
@click.pass_context
def serve(ctx: click.Context, host: str | None, port: int | None, reload: bool) -> None:
    """Run the HTTP API and the scheduler loop."""
    import uvicorn

    settings: Settings = ctx.obj["settings"]
    os.environ["CMP_DB_PATH"] = settings.db_path
    console.print(f"Starting campaign-mailer on {host or settings.host}:{port or settings.port}")
    uvicorn.run(
        "campaign_mailer.server:app",
        host=host or settings.host,
        port=port or settings.port,
        reload=reload,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
