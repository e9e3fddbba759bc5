"""Pytest configuration and fixtures."""

import os

import pytest


@pytest.fixture(scope="session", autouse=True)
def setup_test_env():
    """Set up test environment variables."""
    os.environ["KNOWLEDGE_STORE_ENV"] = "test"
    os.environ["STATE_BACKEND"] = "memory"
    os.environ["STATE_NAMESPACE"] = "test-state"
    os.environ["MEETING_INDEX_ENABLED"] = "true"


class FakeClock:
    """Manually advanced time source."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    """A fake clock starting at t=1000s."""
    return FakeClock()
