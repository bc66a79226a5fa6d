# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Campaign message entity: per-recipient dispatch marker."""

from .table import COMPLAINT, HARD_BOUNCE, CampaignMessagesTable

__all__ = ["COMPLAINT", "HARD_BOUNCE", "CampaignMessagesTable"]
