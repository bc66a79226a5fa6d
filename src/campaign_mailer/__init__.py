# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Multi-tenant email campaign targeting and quota-gated dispatch.

Features:
    - Tag and status based recipient selection with exclusion priority
    - Per-tenant monthly allowance (plan tier + add-ons + bonus grant)
    - Campaign lifecycle draft -> scheduled -> sending -> sent/failed
    - Resumable, idempotent dispatch with bounded concurrency
    - Delivery event reconciliation (SES/SNS supported)
    - Signed unsubscribe links
    - Prometheus metrics, FastAPI REST API and click CLI
    - SQLite/PostgreSQL persistence

Example::

    from campaign_mailer.service import CampaignService
    from campaign_mailer.api import create_app

    svc = CampaignService.from_settings(load_settings())
    app = create_app(svc, api_token="secret")
"""
