import logging

import pytest

from machinehealth.engines.loggers import ObjectFormatter


@pytest.fixture(autouse=True)
def _caplog_all_levels(caplog):
    caplog.set_level(0)


@pytest.fixture(autouse=True)
def _clear_own_handlers():
    logger = logging.getLogger()
    original_level = logger.level
    logger.handlers[:] = [
        handler for handler in logger.handlers
        if not isinstance(handler, logging.StreamHandler) or
           not isinstance(handler.formatter, ObjectFormatter)
    ]
    original_handlers = logger.handlers[:]
    yield
    logger.handlers[:] = original_handlers
    logger.setLevel(original_level)
