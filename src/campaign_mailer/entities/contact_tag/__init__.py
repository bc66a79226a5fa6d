# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Contact/tag junction entity."""

from .table import ContactTagsTable

__all__ = ["ContactTagsTable"]
