from __future__ import annotations

import logging

import pytest


def _reset_logger() -> logging.Logger:
    logger = logging.getLogger("remoterun")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.setLevel(logging.NOTSET)
    logger.propagate = True
    return logger


@pytest.fixture(autouse=True)
def _restore_remoterun_logger():
    # setup_logging() detaches the package logger from the root; undo that so caplog works.
    _reset_logger()
    yield
    _reset_logger()
