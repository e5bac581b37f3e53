"""
Dashboard data core - test configuration.

Everything runs against the in-memory backend, which has the same
native capabilities (and limits) as the table backend.
"""

import asyncio
import itertools
from datetime import datetime, timezone

import pytest
import pytest_asyncio

from dashcore.infra.memory_store import MemoryStoreBackend
from dashcore.infra.store import StoreAdapter
from dashcore.models.identity import CurrentUser

SCOPE = "electronics"
TODAY = datetime(2026, 10, 18, 10, 0, tzinfo=timezone.utc)
START_MS = 1_760_000_000_000


class TickingClock:
    """Millisecond clock that advances by one on every read, so createdAt is strictly ordered."""

    def __init__(self, start: int = START_MS):
        self._ticks = itertools.count(start)

    def __call__(self) -> int:
        return next(self._ticks)


async def eventually(predicate, timeout: float = 1.0):
    """Yield to the loop until ``predicate()`` holds; subscriptions deliver asynchronously."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def backend() -> MemoryStoreBackend:
    return MemoryStoreBackend()


@pytest_asyncio.fixture
async def store(backend):
    adapter = StoreAdapter(backend, clock=TickingClock(), retry_base=0.01, retry_max=0.05)
    await adapter.init()
    yield adapter
    await adapter.close()


@pytest.fixture
def admin() -> CurrentUser:
    return CurrentUser(id="admin-1", role="admin", scope=SCOPE)


@pytest.fixture
def staff() -> CurrentUser:
    return CurrentUser(id="staff-1", role="staff", scope=SCOPE)


@pytest.fixture
def clock():
    return lambda: TODAY
