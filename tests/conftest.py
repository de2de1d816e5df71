"""Shared fixtures: in-memory backends, a controllable clock, a started dashboard."""

from __future__ import annotations

from collections.abc import AsyncIterator
from datetime import UTC, datetime, timedelta

import pytest

from meditrack.app import Dashboard
from meditrack.session import MemoryIdentityProvider
from meditrack.storage.blobs import LocalBlobStore
from meditrack.store.memory import MemoryDocumentStore

DEPLOYMENT_ID = "test-dashboard"


class FakeClock:
    """Callable clock returning a settable, timezone-aware time."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 3, 1, 9, 0, tzinfo=UTC))


@pytest.fixture
def store() -> MemoryDocumentStore:
    return MemoryDocumentStore()


@pytest.fixture
def identity_provider() -> MemoryIdentityProvider:
    return MemoryIdentityProvider()


@pytest.fixture
def blob_store(tmp_path) -> LocalBlobStore:
    return LocalBlobStore(root=tmp_path / "blobs")


@pytest.fixture
async def dashboard(store, identity_provider, blob_store, clock) -> AsyncIterator[Dashboard]:
    """A dashboard signed in anonymously with its first snapshots applied."""
    app = Dashboard(
        store,
        identity_provider,
        deployment_id=DEPLOYMENT_ID,
        blobs=blob_store,
        clock=clock,
    )
    await app.start()
    await app.settle()
    yield app
    await app.close()


@pytest.fixture
def make_profile(dashboard):
    """Add a profile through the dashboard and wait for the mirrors to catch up."""

    async def _make(name: str = "Alice", relationship: str = "Self") -> str:
        profile_id = await dashboard.add_profile(name, relationship)
        assert profile_id is not None
        await dashboard.settle()
        return profile_id

    return _make
