"""
Pytest configuration and shared fixtures.
"""

import logging

import pytest

from loadplane.infra.logging_config import LOGGER_NAME


@pytest.fixture(autouse=True, scope="function")
def restore_package_logger():
    """
    Restore the package logger after each test.

    setup_logging() disables propagation and swaps handlers, which would
    hide records from caplog in later tests.
    """
    logger = logging.getLogger(LOGGER_NAME)
    original_handlers = list(logger.handlers)
    original_propagate = logger.propagate
    original_level = logger.level

    yield

    for handler in logger.handlers:
        if handler not in original_handlers:
            handler.close()
    logger.handlers[:] = original_handlers
    logger.propagate = original_propagate
    logger.setLevel(original_level)
