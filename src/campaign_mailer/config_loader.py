# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Settings loader for the campaign mailer.

Values come from an INI file (default ``config.ini``, overridden by
``CMP_CONFIG``) with ``CMP_*`` environment variables as fallbacks. Invalid
numbers fall back to defaults with a logged warning.

Example:
    Configuration file format (config.ini)::

        [storage]
        db_path = /data/campaigns.db

        [server]
        host = 0.0.0.0
        port = 8000
        api_token = secret

        [transport]
        kind = smtp

        [smtp]
        host = smtp.example.com
        port = 587
        user = mailer
        password = xxx
        use_tls = true

        [dispatch]
        max_concurrent_sends = 5
        max_retries = 3
        retry_delays = 1, 5, 15
        tick_interval = 60

        [unsubscribe]
        secret = change-me
        base_url = https://example.com

        [quota]
        tier.essential = 3000
        tier.enterprise = unlimited
        addon.newsletter = 15000

    Loading::

        settings = load_settings("/etc/campaign-mailer/config.ini")
"""

from __future__ import annotations

import configparser
import os
from dataclasses import dataclass, field
from pathlib import Path

from .logger import get_logger
from .quota import DEFAULT_ADDON_CAPS, DEFAULT_TIER_BASE, QuotaPolicy

logger = get_logger("config_loader")

UNLIMITED = "unlimited"
TRUE_VALUES = {"1", "true", "yes", "on"}
FALSE_VALUES = {"0", "false", "no", "off"}


@dataclass
class TransportSettings:
    """Mail transport selection.

    Attributes:
        kind: "smtp" or "http".
        http_url: Provider send endpoint for the http transport.
        http_token: Bearer token for the http transport.
        timeout: Per-call timeout in seconds.
    """

    kind: str = "smtp"
    http_url: str | None = None
    http_token: str | None = None
    smtp_host: str = "localhost"
    smtp_port: int = 25
    smtp_user: str | None = None
    smtp_password: str | None = None
    smtp_use_tls: bool = False
    smtp_ttl: int = 300
    timeout: float = 30.0


@dataclass
class DispatchSettings:
    max_concurrent_sends: int = 5
    max_retries: int = 3
    retry_delays: list[int] = field(default_factory=lambda: [1, 5, 15])
    tick_interval: float = 60.0
    test_mode: bool = False
    start_active: bool = True
    log_delivery_activity: bool = False


@dataclass
class Settings:
    db_path: str = "/data/campaigns.db"
    host: str = "0.0.0.0"
    port: int = 8000
    api_token: str | None = None
    log_level: str = "INFO"
    unsubscribe_secret: str = "change-me"
    unsubscribe_base_url: str = "http://localhost:8000"
    transport: TransportSettings = field(default_factory=TransportSettings)
    dispatch: DispatchSettings = field(default_factory=DispatchSettings)
    quota: QuotaPolicy = field(default_factory=QuotaPolicy)


def parse_quota_section(items: dict[str, str]) -> QuotaPolicy:
    """Build a QuotaPolicy from ``tier.<name>`` / ``addon.<product>`` keys.

    Entries override the built-in defaults; ``unlimited`` marks a tier as
    unbounded.
    """
    tier_base = dict(DEFAULT_TIER_BASE)
    addon_caps = dict(DEFAULT_ADDON_CAPS)
    unlimited: set[str] = set()
    for key, raw in items.items():
        kind, _, name = key.partition(".")
        name = name.strip().lower()
        value = (raw or "").strip().lower()
        if not name or kind not in ("tier", "addon"):
            logger.warning("Ignoring quota setting %r", key)
            continue
        if kind == "tier" and value == UNLIMITED:
            unlimited.add(name)
            tier_base.setdefault(name, 0)
            continue
        try:
            amount = int(value)
        except ValueError:
            logger.warning("Invalid value for quota %s, using default", key)
            continue
        if amount < 0:
            logger.warning("Negative value for quota %s, using default", key)
            continue
        if kind == "tier":
            tier_base[name] = amount
        else:
            addon_caps[name] = amount
    return QuotaPolicy(tier_base=tier_base, addon_caps=addon_caps, unlimited_tiers=frozenset(unlimited))


def load_settings(config_path: str | None = None) -> Settings:
    """Load settings from config file and environment.

    Priority: config file > environment variables > defaults.

    Environment variables (all prefixed with CMP_):
      CMP_CONFIG - Path to config.ini file (default: config.ini)
      CMP_LOG_LEVEL - Logging level (default: INFO)
      CMP_DB_PATH - Database path or postgresql:// URL
      CMP_HOST, CMP_PORT, CMP_API_TOKEN - HTTP server
      CMP_TRANSPORT - smtp or http; CMP_HTTP_URL, CMP_HTTP_TOKEN
      CMP_SMTP_HOST, CMP_SMTP_PORT, CMP_SMTP_USER, CMP_SMTP_PASSWORD,
      CMP_SMTP_USE_TLS, CMP_SMTP_TTL
      CMP_MAX_CONCURRENT_SENDS, CMP_MAX_RETRIES, CMP_RETRY_DELAYS,
      CMP_TICK_INTERVAL, CMP_TEST_MODE, CMP_SCHEDULER_ACTIVE,
      CMP_LOG_DELIVERY_ACTIVITY
      CMP_UNSUBSCRIBE_SECRET, CMP_UNSUBSCRIBE_BASE_URL
    """
    path = Path(config_path or os.getenv("CMP_CONFIG", "config.ini"))
    parser = configparser.ConfigParser()
    parser.read(path)

    def get(section: str, option: str, env: str, default: str | None = None) -> str | None:
        if parser.has_option(section, option):
            value = parser.get(section, option).strip()
            return value or default
        value = os.environ.get(env)
        if value is not None and value.strip():
            return value.strip()
        return default

    def get_int(section: str, option: str, env: str, default: int) -> int:
        value = get(section, option, env)
        if value is None:
            return default
        try:
            return int(value)
        except ValueError:
            logger.warning(f"Invalid value for [{section}] {option} / {env}, using default")
            return default

    def get_float(section: str, option: str, env: str, default: float) -> float:
        value = get(section, option, env)
        if value is None:
            return default
        try:
            return float(value)
        except ValueError:
            logger.warning(f"Invalid value for [{section}] {option} / {env}, using default")
            return default

    def get_bool(section: str, option: str, env: str, default: bool) -> bool:
        value = get(section, option, env)
        if value is None:
            return default
        normalized = value.lower()
        if normalized in TRUE_VALUES:
            return True
        if normalized in FALSE_VALUES:
            return False
        logger.warning(f"Invalid value for [{section}] {option} / {env}, using default")
        return default

    def get_delays(default: list[int]) -> list[int]:
        value = get("dispatch", "retry_delays", "CMP_RETRY_DELAYS")
        if value is None:
            return default
        try:
            delays = [int(part) for part in value.replace(";", ",").split(",") if part.strip()]
        except ValueError:
            logger.warning("Invalid value for [dispatch] retry_delays, using default")
            return default
        return delays or default

    transport = TransportSettings(
        kind=(get("transport", "kind", "CMP_TRANSPORT", "smtp") or "smtp").lower(),
        http_url=get("transport", "http_url", "CMP_HTTP_URL"),
        http_token=get("transport", "http_token", "CMP_HTTP_TOKEN"),
        smtp_host=get("smtp", "host", "CMP_SMTP_HOST", "localhost") or "localhost",
        smtp_port=get_int("smtp", "port", "CMP_SMTP_PORT", 25),
        smtp_user=get("smtp", "user", "CMP_SMTP_USER"),
        smtp_password=get("smtp", "password", "CMP_SMTP_PASSWORD"),
        smtp_use_tls=get_bool("smtp", "use_tls", "CMP_SMTP_USE_TLS", False),
        smtp_ttl=get_int("smtp", "ttl", "CMP_SMTP_TTL", 300),
        timeout=get_float("transport", "timeout", "CMP_TRANSPORT_TIMEOUT", 30.0),
    )

    dispatch = DispatchSettings(
        max_concurrent_sends=max(1, get_int("dispatch", "max_concurrent_sends", "CMP_MAX_CONCURRENT_SENDS", 5)),
        max_retries=max(0, get_int("dispatch", "max_retries", "CMP_MAX_RETRIES", 3)),
        retry_delays=get_delays([1, 5, 15]),
        tick_interval=get_float("dispatch", "tick_interval", "CMP_TICK_INTERVAL", 60.0),
        test_mode=get_bool("dispatch", "test_mode", "CMP_TEST_MODE", False),
        start_active=get_bool("dispatch", "scheduler_active", "CMP_SCHEDULER_ACTIVE", True),
        log_delivery_activity=get_bool(
            "dispatch", "log_delivery_activity", "CMP_LOG_DELIVERY_ACTIVITY", False
        ),
    )

    quota = parse_quota_section(dict(parser.items("quota"))) if parser.has_section("quota") else QuotaPolicy()

    db_path = get("storage", "db_path", "CMP_DB_PATH", "/data/campaigns.db") or "/data/campaigns.db"
    if "://" not in db_path:
        db_path = os.path.expanduser(db_path)

    return Settings(
        db_path=db_path,
        host=get("server", "host", "CMP_HOST", "0.0.0.0") or "0.0.0.0",
        port=get_int("server", "port", "CMP_PORT", 8000),
        api_token=get("server", "api_token", "CMP_API_TOKEN"),
        log_level=(get("logging", "level", "CMP_LOG_LEVEL", "INFO") or "INFO").upper(),
        unsubscribe_secret=get("unsubscribe", "secret", "CMP_UNSUBSCRIBE_SECRET", "change-me") or "change-me",
        unsubscribe_base_url=get(
            "unsubscribe", "base_url", "CMP_UNSUBSCRIBE_BASE_URL", "http://localhost:8000"
        ) or "http://localhost:8000",
        transport=transport,
        dispatch=dispatch,
        quota=quota,
    )
