# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Tag entity."""

from .table import TagsTable

__all__ = ["TagsTable"]
