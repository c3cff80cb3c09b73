"""
Pytest configuration and fixtures for coedit tests.
"""

from datetime import datetime, timedelta, timezone as dt_timezone

import pytest
from channels.layers import InMemoryChannelLayer

from coedit.backends.memory import InMemoryPresenceBackend
from coedit.backends.registry import reset_presence_backend, set_presence_backend
from coedit.hub import set_hub


class FakeClock:
    """Controllable replacement for timezone.now."""

    def __init__(self, start=None):
        self.now = start or datetime(2024, 5, 1, 10, 0, 0, tzinfo=dt_timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


class FakeUser:
    """Minimal stand-in for an authenticated scope["user"]."""

    is_authenticated = True

    def __init__(self, pk):
        self.pk = pk


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def channel_layer():
    """A fresh in-memory layer per test, so no queue outlives its event loop."""
    return InMemoryChannelLayer()


@pytest.fixture(autouse=True)
def presence_backend():
    """Use a clean in-memory presence backend for every test."""
    backend = InMemoryPresenceBackend()
    set_presence_backend(backend)

    yield backend

    reset_presence_backend()
    set_hub(None)


@pytest.fixture
def signal_log():
    """Collect collaboration_failure signals sent during the test."""
    from coedit.signals import collaboration_failure

    received = []

    def receiver(sender, **kwargs):
        received.append(kwargs)

    collaboration_failure.connect(receiver, weak=False)
    yield received
    collaboration_failure.disconnect(receiver)
