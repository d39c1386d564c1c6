"""Pytest fixtures for SophosGuard Sync tests."""

import logging
from datetime import datetime, timedelta
from unittest.mock import MagicMock

import pytest

from sophosguard_sync import Config, SnapshotStore


class FakeClock:
    """Deterministic clock that advances only when told to."""

    def __init__(self, start=None):
        self.now = start or datetime(2024, 5, 1, 12, 0, 0)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)
        return self.now


class TickingClock(FakeClock):
    """Clock that moves forward one second on every read."""

    def __call__(self):
        self.now += timedelta(seconds=1)
        return self.now


@pytest.fixture
def logger():
    """Named logger used by all components under test."""
    return logging.getLogger("sophosguard-sync-tests")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def ticking_clock():
    return TickingClock()


@pytest.fixture
def config(tmp_path):
    """Config with zero retry delay and no preflight connection check."""
    return Config(
        device_host="fw.example.test",
        username="api-user",
        password="s3cret",
        data_dir=str(tmp_path / "IPList"),
        retry_delay=0,
        check_connection=False,
        threat_level=100,
    )


@pytest.fixture
def store(tmp_path, logger, ticking_clock):
    return SnapshotStore(tmp_path / "IPList", logger=logger, clock=ticking_clock)


def make_response(text="", status_code=200, content=None):
    """Build a mock requests.Response."""
    response = MagicMock()
    response.text = text
    response.status_code = status_code
    response.content = content if content is not None else text.encode("utf-8")
    return response
