"""
Pytest configuration and fixtures for relay tests.
"""

import pytest
from fastapi.testclient import TestClient

from app import app
from lifecycle import PeerSession


class FakeChannel:
    """Stands in for PeerChannel: records what would have been sent."""

    def __init__(self, name: str = "peer"):
        self.name = name
        self.messages = []
        self.closed = False

    def deliver(self, message):
        if self.closed:
            return False
        self.messages.append(message)
        return True

    async def close(self, timeout: float = 1.0):
        self.closed = True

    def types(self):
        return [m["type"] for m in self.messages]

    def __repr__(self):
        return f"FakeChannel({self.name!r})"


@pytest.fixture
def make_session():
    """Factory for sessions backed by FakeChannel."""
    counter = iter(range(1, 10_000))

    def _make(name: str = None) -> PeerSession:
        n = next(counter)
        return PeerSession(f"conn-{n}", FakeChannel(name or f"c{n}"))

    return _make


@pytest.fixture(scope="function")
def client():
    """
    Test client running the app lifespan, so every test gets a fresh registry.
    """
    with TestClient(app) as test_client:
        yield test_client
