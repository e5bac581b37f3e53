"""
Refresh coalescing and polling subscription tests.
"""

import asyncio

import pytest

from dashcore.errors import StoreUnavailable
from dashcore.services.refresh import PollingSubscription, RefreshCoalescer

from conftest import eventually


class TestRefreshCoalescer:
    """At most one refresh in flight, at most one follow-up."""

    @pytest.mark.asyncio
    async def test_request_during_run_is_ignored(self):
        gate = asyncio.Event()
        calls = []

        async def refresh():
            calls.append(len(calls))
            await gate.wait()

        coalescer = RefreshCoalescer(refresh)
        first = asyncio.create_task(coalescer.trigger())
        await eventually(lambda: coalescer.in_flight)

        assert await coalescer.trigger() is False
        gate.set()
        assert await first is True
        assert coalescer.runs == 1
        assert not coalescer.in_flight

    @pytest.mark.asyncio
    async def test_change_during_run_triggers_one_follow_up(self):
        gate = asyncio.Event()

        async def refresh():
            await gate.wait()

        coalescer = RefreshCoalescer(refresh)
        task = asyncio.create_task(coalescer.trigger())
        await eventually(lambda: coalescer.in_flight)
        coalescer.mark_changed()
        coalescer.mark_changed()
        coalescer.mark_changed()
        gate.set()
        await task
        assert coalescer.runs == 2

    @pytest.mark.asyncio
    async def test_change_while_idle_is_not_remembered(self):
        async def refresh():
            pass

        coalescer = RefreshCoalescer(refresh)
        coalescer.mark_changed()
        await coalescer.trigger()
        assert coalescer.runs == 1

    @pytest.mark.asyncio
    async def test_errors_propagate_and_release(self):
        async def refresh():
            raise StoreUnavailable("offline")

        coalescer = RefreshCoalescer(refresh)
        with pytest.raises(StoreUnavailable):
            await coalescer.trigger()
        assert not coalescer.in_flight


class TestPollingSubscription:
    """Periodic loads delivered to a listener."""

    @pytest.mark.asyncio
    async def test_polls_until_unsubscribed(self):
        loads = []

        async def load():
            loads.append(1)
            return len(loads)

        seen = []
        subscription = PollingSubscription(load, seen.append, interval=0.01)
        await eventually(lambda: len(seen) >= 3)
        subscription()
        assert not subscription.active
        count = len(seen)
        await asyncio.sleep(0.05)
        assert len(seen) == count
        assert seen[:3] == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_store_outage_reported_and_polling_continues(self):
        state = {"available": False}

        async def load():
            if not state["available"]:
                raise StoreUnavailable("offline")
            return "ok"

        seen, errors = [], []
        subscription = PollingSubscription(load, seen.append, errors.append, interval=0.01)
        await eventually(lambda: len(errors) >= 1)
        state["available"] = True
        await eventually(lambda: seen == ["ok"] or len(seen) >= 1)
        assert seen[0] == "ok"
        subscription.unsubscribe()
