# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Tests for CLI commands and helper functions."""

import asyncio
import json

import pytest
from click.testing import CliRunner

from campaign_mailer import cli
from campaign_mailer.cli import main, run_async
from campaign_mailer.service import CampaignService

from conftest import FakeTransport


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    monkeypatch.delenv("CMP_CONFIG", raising=False)
    monkeypatch.delenv("CMP_DB_PATH", raising=False)


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "cli.db")


@pytest.fixture
def transport(monkeypatch):
    fake = FakeTransport()
    monkeypatch.setattr(cli, "build_transport", lambda settings: fake)
    return fake


@pytest.fixture
def invoke(db_path):
    runner = CliRunner()

    def _invoke(*args):
        return runner.invoke(main, ["--db", db_path, *args])

    return _invoke


def seed(db_path, *commands):
    """Run service commands directly against the CLI database."""

    async def _run():
        service = CampaignService(db_path)
        await service.init()
        results = []
        try:
            for cmd, payload in commands:
                result = await service.handle_command(cmd, payload)
                assert result["ok"], result
                results.append(result)
        finally:
            await service.stop()
        return results

    return asyncio.run(_run())


CAMPAIGN = {
    "tenant_id": "acme",
    "title": "June news",
    "subject": "June",
    "body_html": "<p>Hi</p>",
    "sender_email": "news@acme.test",
    "status_filters": ["active"],
}


def test_run_async():
    async def answer():
        return 42

    assert run_async(answer()) == 42


class TestTenants:
    def test_add_and_list(self, invoke):
        result = invoke("tenants", "add", "acme", "--name", "ACME", "--tier", "essential")
        assert result.exit_code == 0, result.output
        assert "Tenant 'acme' saved." in result.output

        result = invoke("tenants", "list", "--json")
        assert result.exit_code == 0
        tenants = json.loads(result.output)
        assert [t["id"] for t in tenants] == ["acme"]
        assert tenants[0]["plan_tier"] == "essential"

    def test_list_empty(self, invoke):
        result = invoke("tenants", "list")
        assert result.exit_code == 0
        assert "No tenants found." in result.output

    def test_quota(self, invoke):
        invoke("tenants", "add", "acme", "--tier", "essential")
        invoke("tenants", "grant-bonus", "acme", "500", "--expires", "2999-01-01T00:00:00Z")

        result = invoke("tenants", "quota", "acme", "--json")
        assert result.exit_code == 0, result.output
        quota = json.loads(result.output)
        assert quota["base"] == 3000
        assert quota["bonus"] == 500
        assert quota["allowance"] == 3500
        assert quota["remaining"] == 3500

    def test_quota_unknown_tenant(self, invoke):
        result = invoke("tenants", "quota", "ghost")
        assert result.exit_code == 1

    def test_bad_bonus_expiry(self, invoke):
        invoke("tenants", "add", "acme")
        result = invoke("tenants", "grant-bonus", "acme", "10", "--expires", "someday")
        assert result.exit_code == 2
        assert "invalid timestamp" in result.output


class TestContacts:
    def test_add_and_list(self, invoke):
        invoke("tenants", "add", "acme")
        result = invoke("contacts", "add", "acme", "Ann@Example.com", "--status", "active")
        assert result.exit_code == 0, result.output
        assert "added (id 1)" in result.output

        result = invoke("contacts", "list", "acme", "--json")
        contacts = json.loads(result.output)
        assert contacts[0]["email"] == "ann@example.com"
        assert contacts[0]["status"] == "active"

    def test_duplicate_contact_fails(self, invoke):
        invoke("tenants", "add", "acme")
        invoke("contacts", "add", "acme", "ann@example.com")
        result = invoke("contacts", "add", "acme", "ann@example.com")
        assert result.exit_code == 1

    def test_import_csv(self, invoke, tmp_path):
        invoke("tenants", "add", "acme")
        csv_file = tmp_path / "contacts.csv"
        csv_file.write_text(
            "email,first_name,status,tags\n"
            "ann@example.com,Ann,active,news;vip\n"
            "bob@example.com,Bob,,news\n"
            "not-an-email,,,\n"
            "ann@example.com,Ann,active,\n",
            encoding="utf-8",
        )

        result = invoke("contacts", "import", "acme", str(csv_file))
        assert result.exit_code == 0, result.output
        assert "Imported 2 contacts (1 already present)." in result.output

        tags = json.loads(invoke("tags", "list", "acme", "--json").output)
        assert sorted(t["name"] for t in tags) == ["news", "vip"]

    def test_import_requires_email_column(self, invoke, tmp_path):
        invoke("tenants", "add", "acme")
        csv_file = tmp_path / "contacts.csv"
        csv_file.write_text("mail\nann@example.com\n", encoding="utf-8")

        result = invoke("contacts", "import", "acme", str(csv_file))
        assert result.exit_code == 1

    def test_unsubscribe_twice(self, invoke):
        invoke("tenants", "add", "acme")
        invoke("contacts", "add", "acme", "ann@example.com", "--status", "active")

        assert "unsubscribed." in invoke("contacts", "unsubscribe", "1").output
        assert "already unsubscribed" in invoke("contacts", "unsubscribe", "1").output


class TestCampaigns:
    @pytest.fixture
    def campaign_id(self, db_path):
        results = seed(
            db_path,
            ("addTenant", {"id": "acme", "plan_tier": "essential"}),
            ("addContact", {"tenant_id": "acme", "email": "ann@example.com", "status": "active"}),
            ("addContact", {"tenant_id": "acme", "email": "bob@example.com", "status": "active"}),
            ("addContact", {"tenant_id": "acme", "email": "cy@example.com", "status": "pending"}),
            ("createCampaign", CAMPAIGN),
        )
        return results[-1]["campaign"]["id"]

    def test_list_and_preview(self, invoke, campaign_id):
        campaigns = json.loads(invoke("campaigns", "list", "acme", "--json").output)
        assert [c["status"] for c in campaigns] == ["draft"]

        preview = json.loads(invoke("campaigns", "preview", str(campaign_id), "--json").output)
        assert preview["recipient_count"] == 2

    def test_send_now(self, invoke, transport, campaign_id):
        result = invoke("campaigns", "send-now", str(campaign_id))
        assert result.exit_code == 0, result.output
        assert f"Campaign {campaign_id} is sending." in result.output
        assert "sent=2" in result.output
        assert sorted(transport.recipients) == ["ann@example.com", "bob@example.com"]
        assert transport.closed

        stats = json.loads(invoke("campaigns", "show", str(campaign_id), "--json").output)
        assert stats["status"] == "sent"
        assert stats["sent_count"] == 2

        quota = json.loads(invoke("tenants", "quota", "acme", "--json").output)
        assert quota["sent_this_cycle"] == 2

    def test_schedule_in_future_then_tick(self, invoke, transport, campaign_id):
        result = invoke("campaigns", "schedule", str(campaign_id), "--at", "2999-01-01T00:00:00Z")
        assert result.exit_code == 0, result.output
        assert "is scheduled." in result.output

        result = invoke("tick")
        assert result.exit_code == 0
        assert "Nothing to dispatch." in result.output
        assert transport.sent == []

    def test_send_now_twice_fails(self, invoke, transport, campaign_id):
        invoke("campaigns", "send-now", str(campaign_id))
        result = invoke("campaigns", "send-now", str(campaign_id))
        assert result.exit_code == 1

    def test_show_unknown_campaign(self, invoke, campaign_id):
        assert invoke("campaigns", "show", "999").exit_code == 1
