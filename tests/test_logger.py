# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
from campaign_mailer.logger import ROOT_LOGGER_NAME, get_logger


def test_get_logger_reuses_existing_logger():
    logger = get_logger("dispatch")
    handler_count = len(logger.handlers)

    same_logger = get_logger("dispatch")
    assert logger is same_logger
    assert len(same_logger.handlers) == handler_count


def test_loggers_live_under_package_root():
    assert get_logger("quota").name == f"{ROOT_LOGGER_NAME}.quota"
    assert get_logger().name == ROOT_LOGGER_NAME
    assert get_logger("tracker").parent is get_logger()
