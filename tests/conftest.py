"""
Pytest configuration and shared fixtures for the AniSync tests.
"""

import os
from collections import deque
from datetime import datetime

import pytest

# Qt must not look for a display.
os.environ.setdefault("QT_QPA_PLATFORM", "offscreen")

from core.api_client import HttpResponse  # noqa: E402
from core.dispatch import InlineDispatcher, RetryPolicy  # noqa: E402
from core.errors import TransportError  # noqa: E402
from core.orchestrator import SyncOrchestrator  # noqa: E402
from services.service_anilist import AniListService  # noqa: E402
from services.service_kitsu import KitsuService  # noqa: E402
from services.service_myanimelist import MyAnimeListService  # noqa: E402

from samples import NOW  # noqa: E402


class FakeTransport:
    """Stands in for ApiClient: records requests and replays queued responses in order."""

    def __init__(self):
        self.calls = []
        self.responses = deque()

    def queue(self, *responses):
        self.responses.extend(responses)
        return self

    def execute(self, request, timeout=None) -> HttpResponse:
        self.calls.append(request)
        if not self.responses:
            raise AssertionError(f"Unexpected request: {request.method} {request.url}")
        item = self.responses.popleft()
        if isinstance(item, TransportError):
            raise item
        return item

    def close(self):
        pass


class ManualDispatcher:
    """Holds every exchange until the test completes it, so completion order is under test control."""

    def __init__(self):
        self.pending = []

    def dispatch(self, ticket, task, on_done):
        self.pending.append((ticket, task, on_done))

    def complete(self, index: int = 0, response=None):
        """Runs the held exchange (or delivers the given response instead) and reports it."""
        ticket, task, on_done = self.pending.pop(index)
        on_done(ticket, response if response is not None else task())
        return ticket

    def types(self):
        return [ticket.dispatched.type for ticket, _, _ in self.pending]

    def shutdown(self):
        self.pending.clear()


class Clock:
    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class MemoryKeyring:
    def __init__(self):
        self.passwords = {}

    def set_password(self, service, key, password):
        self.passwords[(service, key)] = password

    def get_password(self, service, key):
        return self.passwords.get((service, key))

    def delete_password(self, service, key):
        from keyring.errors import PasswordDeleteError
        if (service, key) not in self.passwords:
            raise PasswordDeleteError("not found")
        del self.passwords[(service, key)]


@pytest.fixture
def memory_keyring(monkeypatch):
    """Replaces the OS vault with a dictionary."""
    vault = MemoryKeyring()
    monkeypatch.setattr("keyring.set_password", vault.set_password)
    monkeypatch.setattr("keyring.get_password", vault.get_password)
    monkeypatch.setattr("keyring.delete_password", vault.delete_password)
    return vault


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def manual():
    return ManualDispatcher()


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def adapters():
    return {
        "anilist": AniListService(),
        "kitsu": KitsuService(),
        "myanimelist": MyAnimeListService(client_id="mal-client"),
    }


@pytest.fixture
def make_orchestrator(transport, clock, adapters):
    """Builds an orchestrator over the fake transport; inline dispatch without waits by default."""

    def factory(active="anilist", dispatcher=None, **kwargs):
        if dispatcher is None:
            dispatcher = InlineDispatcher(RetryPolicy(max_attempts=1, sleep=lambda s: None))
        return SyncOrchestrator(
            adapters.values(), transport, dispatcher=dispatcher,
            active_service=active, clock=clock, **kwargs,
        )

    return factory
