# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Campaign entity."""

from .table import COUNTER_FIELDS, CampaignsTable, counter_increment_sql

__all__ = ["COUNTER_FIELDS", "CampaignsTable", "counter_increment_sql"]
