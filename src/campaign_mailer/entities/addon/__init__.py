# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Add-on subscription entity (billing mirror)."""

from .table import AddonSubscriptionsTable

__all__ = ["AddonSubscriptionsTable"]
