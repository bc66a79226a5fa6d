# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Logging utilities for the campaign mailer.

Modules obtain named loggers here; level, handlers and format are set once
via ``logging.basicConfig()`` in the entry point to avoid duplicate handlers.

Example:
    Typical usage in a module::

        from campaign_mailer.logger import get_logger

        logger = get_logger("dispatch")
        logger.info("Campaign %s finished", campaign_id)
"""

import logging

ROOT_LOGGER_NAME = "campaign_mailer"


def get_logger(name: str | None = None) -> logging.Logger:
    """Return a logger under the ``campaign_mailer`` hierarchy.

    Args:
        name: Child logger name (e.g. "dispatch"). None returns the root
            package logger.

    Returns:
        A ``logging.Logger`` instance bound to the given name.
    """
    if not name:
        return logging.getLogger(ROOT_LOGGER_NAME)
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")
