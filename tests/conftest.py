import logging
from datetime import datetime, timedelta, timezone

import pytest

from dlqctl.db import Database
from dlqctl.handlers import HandlerRegistry
from dlqctl.models import RetryConfig
from dlqctl.queue import QueueManager

NOW = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start=NOW):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


@pytest.fixture
def temp_db(tmp_path):
    return Database(str(tmp_path / 'dlqctl.db'))


@pytest.fixture
def retry_config():
    return RetryConfig()


@pytest.fixture
def queue_manager(temp_db, retry_config):
    return QueueManager(temp_db, retry_config)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def registry():
    return HandlerRegistry()


@pytest.fixture(autouse=True)
def quiet_logging():
    # setup_logging() is a no-op while the dlqctl logger has a handler.
    logger = logging.getLogger('dlqctl')
    handler = logging.NullHandler()
    logger.addHandler(handler)
    yield
    logger.removeHandler(handler)
