"""
Pytest configuration and shared fixtures.

The broker is replaced by the in-memory fake from tests.fakes.
"""

import signal
from collections.abc import Generator

import pytest

from tests.fakes import FakeBroker
from tubeworker.client import JobQueue
from tubeworker.config import Settings

TEST_BROKER_URL = "beanstalk://localhost/"


@pytest.fixture
def broker() -> FakeBroker:
    """A fresh in-memory broker."""
    return FakeBroker()


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings."""
    return Settings(
        _env_file=None,
        beanstalk_url=TEST_BROKER_URL,
        worker_fork=False,
        log_level="DEBUG",
        log_format="console",
    )


@pytest.fixture
def queue(test_settings: Settings, broker: FakeBroker) -> Generator[JobQueue]:
    """A queue wired to the fake broker."""
    queue = JobQueue(test_settings, client_factory=broker.client)
    yield queue
    queue.clear()
    queue.close()


@pytest.fixture
def restore_signals() -> Generator[None]:
    """Put SIGINT/SIGTERM handlers back after a test that installs its own."""
    saved = {sig: signal.getsignal(sig) for sig in (signal.SIGINT, signal.SIGTERM)}
    yield
    for sig, handler in saved.items():
        signal.signal(sig, handler)
