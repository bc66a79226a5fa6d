# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Tenant entity: plan tier, bonus grant, cycle usage."""

from .table import CONSUME_QUOTA_SQL, TenantsTable

__all__ = ["CONSUME_QUOTA_SQL", "TenantsTable"]
