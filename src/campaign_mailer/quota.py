# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Monthly send allowance of a tenant.

The allowance is the sum of three independent sources::

    allowance = base(tier) + sum(cap of each active add-on) + live bonus

- ``base(tier)``: per-tier constant; unknown or missing tier gives 0.
  Tiers listed in ``unlimited_tiers`` are unbounded.
- add-on: counts while ``status == "active"``, or while cancelled with
  ``access_until`` at or after the start of tomorrow in the tenant's
  timezone. Caps of several add-ons add up.
- bonus: counts only while ``now < bonus_emails_expiry``. An expired bonus
  stays stored and is reported as expired.

compute_allowance() is a pure function of a snapshot and a timestamp.
QuotaCalculator re-reads the snapshot on every call; nothing is cached.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta, timezone
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .campaign_db import CampaignDb
from .logger import get_logger

logger = get_logger("quota")

DEFAULT_TIER_BASE: dict[str, int] = {
    "basic": 0,
    "essential": 3000,
    "pro": 10000,
}

DEFAULT_ADDON_CAPS: dict[str, int] = {
    "newsletter": 15000,
    "newsletter_100": 100000,
}

ADDON_ACTIVE = "active"
ADDON_CANCELLED = "cancelled"


@dataclass(frozen=True)
class QuotaPolicy:
    """Tier constants and add-on caps. Keys are lower-case."""

    tier_base: Mapping[str, int] = field(default_factory=lambda: dict(DEFAULT_TIER_BASE))
    addon_caps: Mapping[str, int] = field(default_factory=lambda: dict(DEFAULT_ADDON_CAPS))
    unlimited_tiers: frozenset[str] = frozenset()

    def base_for(self, tier: str | None) -> int:
        if not tier:
            return 0
        return int(self.tier_base.get(tier.strip().lower(), 0))

    def is_unlimited(self, tier: str | None) -> bool:
        return bool(tier) and tier.strip().lower() in self.unlimited_tiers

    def cap_for(self, product_id: str | None) -> int:
        if not product_id:
            return 0
        return int(self.addon_caps.get(product_id.strip().lower(), 0))


@dataclass(frozen=True)
class QuotaAllowance:
    """Result of one allowance computation.

    ``total`` is meaningless when ``unlimited`` is True.
    """

    total: int
    base: int = 0
    addons: int = 0
    bonus: int = 0
    bonus_expired: bool = False
    unlimited: bool = False

    def remaining(self, sent: int) -> int | None:
        """Sends left given ``sent`` already consumed; None when unlimited."""
        if self.unlimited:
            return None
        return max(0, self.total - sent)

    def permits(self, used: int) -> bool:
        """True if one more send fits after ``used`` sends."""
        return self.unlimited or used < self.total

    def as_dict(self) -> dict[str, Any]:
        return {
            "allowance": None if self.unlimited else self.total,
            "unlimited": self.unlimited,
            "base": self.base,
            "addons": self.addons,
            "bonus": self.bonus,
            "bonus_expired": self.bonus_expired,
        }


def tenant_zone(name: str | None) -> ZoneInfo | timezone:
    if not name:
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone %r, using UTC", name)
        return timezone.utc


def start_of_tomorrow(now_ts: int, tz_name: str | None = None) -> int:
    """Epoch seconds of the next local midnight in ``tz_name``."""
    tz = tenant_zone(tz_name)
    local_now = datetime.fromtimestamp(now_ts, tz)
    tomorrow = datetime.combine(local_now.date() + timedelta(days=1), time.min, tzinfo=tz)
    return int(tomorrow.timestamp())


def addon_is_active(addon: Mapping[str, Any], tomorrow_ts: int) -> bool:
    status = (addon.get("status") or "").lower()
    if status == ADDON_ACTIVE:
        return True
    if status == ADDON_CANCELLED:
        access_until = addon.get("access_until")
        return access_until is not None and int(access_until) >= tomorrow_ts
    return False


def compute_allowance(
    tenant: Mapping[str, Any],
    addons: Iterable[Mapping[str, Any]],
    now_ts: int,
    policy: QuotaPolicy | None = None,
) -> QuotaAllowance:
    """Pure allowance computation from a tenant snapshot.

    Args:
        tenant: Tenant row (plan_tier, timezone, bonus_emails, bonus_emails_expiry).
        addons: Add-on subscription rows of the tenant.
        now_ts: Current time, epoch seconds.
        policy: Tier/add-on constants. Defaults to the built-in table.
    """
    policy = policy or QuotaPolicy()
    tier = tenant.get("plan_tier")
    base = policy.base_for(tier)

    tomorrow_ts = start_of_tomorrow(now_ts, tenant.get("timezone"))
    addon_total = sum(
        policy.cap_for(addon.get("product_id"))
        for addon in addons
        if addon_is_active(addon, tomorrow_ts)
    )

    bonus = 0
    bonus_expired = False
    amount = int(tenant.get("bonus_emails") or 0)
    expiry = tenant.get("bonus_emails_expiry")
    if amount > 0 and expiry is not None:
        if now_ts < int(expiry):
            bonus = amount
        else:
            bonus_expired = True

    return QuotaAllowance(
        total=base + addon_total + bonus,
        base=base,
        addons=addon_total,
        bonus=bonus,
        bonus_expired=bonus_expired,
        unlimited=policy.is_unlimited(tier),
    )


class QuotaCalculator:
    """Reads a fresh tenant snapshot and computes the allowance."""

    def __init__(self, db: CampaignDb, policy: QuotaPolicy | None = None):
        self.db = db
        self.policy = policy or QuotaPolicy()

    async def allowance(self, tenant_id: str, now_ts: int) -> QuotaAllowance:
        snapshot = await self.db.quota_snapshot(tenant_id)
        return compute_allowance(snapshot["tenant"], snapshot["addons"], now_ts, self.policy)

    async def usage(self, tenant_id: str, now_ts: int) -> tuple[QuotaAllowance, int]:
        """Allowance and persisted ``emails_sent_this_cycle`` from one snapshot."""
        snapshot = await self.db.quota_snapshot(tenant_id)
        quota = compute_allowance(snapshot["tenant"], snapshot["addons"], now_ts, self.policy)
        return quota, int(snapshot["tenant"].get("emails_sent_this_cycle") or 0)

    async def status(self, tenant_id: str, now_ts: int) -> dict[str, Any]:
        """Allowance breakdown plus current usage, for operators."""
        snapshot = await self.db.quota_snapshot(tenant_id)
        tenant = snapshot["tenant"]
        quota = compute_allowance(tenant, snapshot["addons"], now_ts, self.policy)
        sent = int(tenant.get("emails_sent_this_cycle") or 0)
        return {
            **quota.as_dict(),
            "tenant_id": tenant_id,
            "plan_tier": tenant.get("plan_tier"),
            "bonus_emails": int(tenant.get("bonus_emails") or 0),
            "bonus_emails_expiry": tenant.get("bonus_emails_expiry"),
            "sent_this_cycle": sent,
            "remaining": quota.remaining(sent),
        }
