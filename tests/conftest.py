# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Shared fixtures: temporary database, fake transport and a settable clock."""

from __future__ import annotations

import asyncio
import itertools

import pytest_asyncio

from campaign_mailer.campaign_db import CampaignDb
from campaign_mailer.errors import TransportError
from campaign_mailer.transport import OutboundEmail

NOW = 1_750_000_000  # 2025-06-15T15:06:40Z


class FakeClock:
    def __init__(self, now: int = NOW):
        self.now = now

    def __call__(self) -> float:
        return float(self.now)


class FakeTransport:
    """Records sends; ``failures`` maps an address to errors raised in order."""

    def __init__(self, delay: float = 0.0):
        self.sent: list[OutboundEmail] = []
        self.attempts: list[str] = []
        self.failures: dict[str, list[BaseException]] = {}
        self.delay = delay
        self.closed = False
        self.in_flight = 0
        self.max_in_flight = 0
        self._ids = itertools.count(1)

    def fail(self, address: str, *errors: BaseException) -> None:
        self.failures.setdefault(address, []).extend(errors)

    async def send(self, email: OutboundEmail) -> str:
        self.attempts.append(email.to_address)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            pending = self.failures.get(email.to_address)
            if pending:
                raise pending.pop(0)
            self.sent.append(email)
            return f"msg-{next(self._ids)}@test"
        finally:
            self.in_flight -= 1

    async def close(self) -> None:
        self.closed = True

    @property
    def recipients(self) -> list[str]:
        return [email.to_address for email in self.sent]


def temporary(message: str = "451 try again later") -> TransportError:
    return TransportError(message, kind="temporary", smtp_code=451)


def permanent(message: str = "550 mailbox unavailable") -> TransportError:
    return TransportError(message, kind="permanent", smtp_code=550)


@pytest_asyncio.fixture
async def db(tmp_path):
    """Create a temporary database for testing."""
    db = CampaignDb(str(tmp_path / "campaigns.db"))
    await db.init_db()
    yield db
    await db.close()


@pytest_asyncio.fixture
async def tenant(db: CampaignDb):
    """Tenant 'acme' on the essential tier (3,000 emails)."""
    await db.add_tenant({"id": "acme", "name": "ACME", "plan_tier": "essential", "timezone": "UTC"})
    return "acme"
