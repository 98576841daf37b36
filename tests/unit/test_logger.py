"""Tests for logger setup."""

import logging
import logging.handlers
from uuid import uuid4

import pytest

from safee.core.logger import setup_logger


@pytest.fixture
def name():
    logger_name = f"safee-test-{uuid4().hex[:8]}"
    yield logger_name
    logger = logging.getLogger(logger_name)
    for handler in list(logger.handlers):
        handler.close()
        logger.removeHandler(handler)


def test_file_and_console_handlers(name, tmp_path):
    logger = setup_logger(name, log_dir=str(tmp_path), level="debug")

    assert logger.level == logging.DEBUG
    assert {type(h) for h in logger.handlers} == {logging.handlers.RotatingFileHandler, logging.StreamHandler}
    logger.info("hello")
    for handler in logger.handlers:
        handler.flush()
    assert "[INFO] [%s] hello" % name in (tmp_path / f"{name}.log").read_text()


def test_repeat_setup_keeps_handlers(name, tmp_path):
    setup_logger(name, log_dir=str(tmp_path), file_logging=False)
    logger = setup_logger(name, log_dir=str(tmp_path), level="ERROR", file_logging=False)

    assert len(logger.handlers) == 1
    assert logger.level == logging.ERROR


def test_invalid_level(name):
    with pytest.raises(ValueError):
        setup_logger(name, level="LOUD", file_logging=False)
