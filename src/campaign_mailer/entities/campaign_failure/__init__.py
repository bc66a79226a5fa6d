# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Per-recipient failure entity."""

from .table import CampaignFailuresTable

__all__ = ["CampaignFailuresTable"]
