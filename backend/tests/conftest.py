import pytest

from backend.app.services.registry import InMemoryPendingSearchStore, PendingSearchRegistry
from backend.tests.fakes import Clock


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def registry(clock):
    return PendingSearchRegistry(InMemoryPendingSearchStore(), grace_seconds=30, abandon_seconds=300, clock=clock)
