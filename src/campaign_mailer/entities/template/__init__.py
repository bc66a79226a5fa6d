# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Email template entity."""

from .table import TemplatesTable

__all__ = ["TemplatesTable"]
