"""
Store adapter tests: point operations, ordered scans, batches and
realtime subscriptions.
"""

import pytest

from dashcore.errors import Conflict, NotFound, PartialFailure, StoreUnavailable, ValidationError
from dashcore.infra.store import BatchOperation
from dashcore.models.record import Document, ms_to_iso

from conftest import START_MS, eventually

PATH = "electronics/sales"


class TestCrud:
    """Create, read, update and delete."""

    @pytest.mark.asyncio
    async def test_create_assigns_id_and_timestamps(self, store):
        record = await store.create(PATH, {"customerName": "Asha"})
        assert record.id
        assert record.createdAt == record.updatedAt
        assert record.fields == {"customerName": "Asha"}
        fetched = await store.get_by_id(PATH, record.id)
        assert fetched == record

    @pytest.mark.asyncio
    async def test_create_with_existing_id_conflicts(self, store):
        await store.create(PATH, {"n": 1}, id="sale-1")
        with pytest.raises(Conflict):
            await store.create(PATH, {"n": 2}, id="sale-1")
        assert (await store.get_by_id(PATH, "sale-1")).fields == {"n": 1}

    @pytest.mark.asyncio
    async def test_get_missing_raises_not_found(self, store):
        with pytest.raises(NotFound):
            await store.get_by_id(PATH, "nope")
        assert await store.exists(PATH, "nope") is False

    @pytest.mark.asyncio
    async def test_update_merges_and_removes_none(self, store):
        record = await store.create(PATH, {"a": 1, "b": 2}, id="s1")
        updated = await store.update(PATH, "s1", {"b": None, "c": 3})
        assert updated.fields == {"a": 1, "c": 3}
        assert updated.createdAt == record.createdAt
        assert updated.updatedAt > record.updatedAt

    @pytest.mark.asyncio
    async def test_update_missing_raises_not_found(self, store):
        with pytest.raises(NotFound):
            await store.update(PATH, "ghost", {"a": 1})

    @pytest.mark.asyncio
    async def test_delete_is_idempotent(self, store):
        await store.create(PATH, {}, id="s1")
        await store.delete(PATH, "s1")
        await store.delete(PATH, "s1")
        assert await store.exists(PATH, "s1") is False

    @pytest.mark.parametrize("bad_id", ["a/b", "a#b", "a?b", "a\\b", ""])
    @pytest.mark.asyncio
    async def test_invalid_ids_rejected(self, store, bad_id):
        with pytest.raises(ValidationError):
            await store.create(PATH, {}, id=bad_id)

    @pytest.mark.asyncio
    async def test_offline_store_raises_unavailable(self, store, backend):
        backend.set_available(False)
        with pytest.raises(StoreUnavailable):
            await store.get_by_id(PATH, "s1")

    def test_document_timestamps_are_iso(self):
        assert ms_to_iso(START_MS) == "2025-10-09T08:53:20.000Z"


class TestScan:
    """Ordered scans on top of key-ordered native queries."""

    @pytest.mark.asyncio
    async def test_default_order_is_newest_first(self, store):
        for key in ("b", "a", "c"):
            await store.create(PATH, {"key": key}, id=key)
        records = await store.scan(PATH)
        assert [r.id for r in records] == ["c", "a", "b"]

    @pytest.mark.asyncio
    async def test_limit_applied_after_client_sort(self, store, backend):
        for key in ("b", "a", "c"):
            await store.create(PATH, {}, id=key)
        records = await store.scan(PATH, limit=1)
        assert [r.id for r in records] == ["c"]
        assert backend.query_log[-1] == (PATH, None, None, None)

    @pytest.mark.asyncio
    async def test_limit_pushed_down_for_key_order(self, store, backend):
        for key in ("b", "a", "c"):
            await store.create(PATH, {}, id=key)
        records = await store.scan(PATH, order_field="id", order_direction="asc", limit=2)
        assert [r.id for r in records] == ["a", "b"]
        assert backend.query_log[-1] == (PATH, None, None, 2)

    @pytest.mark.asyncio
    async def test_missing_sort_field_goes_last(self, store):
        await store.create(PATH, {"rank": 2}, id="a")
        await store.create(PATH, {}, id="b")
        await store.create(PATH, {"rank": 1}, id="c")
        records = await store.scan(PATH, order_field="rank", order_direction="asc")
        assert [r.id for r in records] == ["c", "a", "b"]

    @pytest.mark.asyncio
    async def test_boolean_filter_is_strict(self, store):
        await store.create(PATH, {"flag": True}, id="a")
        await store.create(PATH, {"flag": 1}, id="b")
        records = await store.scan(PATH, equality_filter=("flag", True))
        assert [r.id for r in records] == ["a"]

    @pytest.mark.asyncio
    async def test_count_applies_every_filter(self, store):
        await store.create(PATH, {"status": "emi", "city": "Pune"})
        await store.create(PATH, {"status": "emi", "city": "Agra"})
        await store.create(PATH, {"status": "paid", "city": "Pune"})
        assert await store.count(PATH, {"status": "emi", "city": "Pune"}) == 1
        assert await store.count(PATH) == 3

    @pytest.mark.asyncio
    async def test_bad_direction_rejected(self, store):
        with pytest.raises(ValidationError):
            await store.scan(PATH, order_direction="sideways")


class TestBatch:
    """Sequential batches that report every item."""

    @pytest.mark.asyncio
    async def test_all_succeed(self, store):
        await store.create(PATH, {"n": 1}, id="x")
        result = await store.batch(PATH, [
            BatchOperation(type="create", id="y", data={"n": 2}),
            {"type": "update", "id": "x", "data": {"n": 10}},
            {"type": "delete", "id": "y"},
        ])
        assert result.ok
        assert result.succeeded == 3
        assert (await store.get_by_id(PATH, "x")).fields == {"n": 10}
        assert await store.exists(PATH, "y") is False

    @pytest.mark.asyncio
    async def test_partial_failure_keeps_going(self, store):
        await store.create(PATH, {}, id="x")
        result = await store.batch(PATH, [
            {"type": "update", "id": "missing", "data": {"n": 1}},
            {"type": "update", "id": "x", "data": {"n": 2}},
        ])
        assert result.partial
        assert [item.ok for item in result.items] == [False, True]
        assert isinstance(result.items[0].error, NotFound)
        with pytest.raises(PartialFailure) as exc:
            result.raise_for_failures()
        assert exc.value.results == result.items

    @pytest.mark.asyncio
    async def test_total_failure_raises_first_error(self, store):
        result = await store.batch(PATH, [{"type": "explode", "id": "x"}])
        assert not result.ok and not result.partial
        with pytest.raises(ValidationError):
            result.raise_for_failures()


class TestSubscriptions:
    """Snapshot delivery, coalescing and resubscription."""

    @pytest.mark.asyncio
    async def test_initial_snapshot_then_changes(self, store):
        snapshots = []
        subscription = store.subscribe(PATH, snapshots.append)
        await eventually(lambda: len(snapshots) == 1)
        assert snapshots[0] == []

        await store.create(PATH, {"n": 1}, id="a")
        await eventually(lambda: snapshots[-1] and snapshots[-1][0].id == "a")
        subscription.unsubscribe()

    @pytest.mark.asyncio
    async def test_unsubscribe_stops_delivery(self, store):
        snapshots = []
        subscription = store.subscribe(PATH, snapshots.append)
        await eventually(lambda: len(snapshots) == 1)
        subscription.unsubscribe()
        assert not subscription.active

        await store.create(PATH, {}, id="late")
        for _ in range(10):
            await store.exists(PATH, "late")
        assert len(snapshots) == 1

    @pytest.mark.asyncio
    async def test_unsubscribe_leaves_other_subscriptions(self, store):
        first, second = [], []
        one = store.subscribe(PATH, first.append)
        two = store.subscribe(PATH, second.append)
        await eventually(lambda: len(first) == 1 and len(second) == 1)

        one.unsubscribe()
        await store.create(PATH, {"n": 1}, id="a")
        await eventually(lambda: len(second) == 2)

        assert [r.id for r in second[-1]] == ["a"]
        assert len(first) == 1
        assert two.active
        two.unsubscribe()

    @pytest.mark.asyncio
    async def test_burst_is_coalesced(self, store):
        snapshots = []
        subscription = store.subscribe(PATH, snapshots.append)
        await eventually(lambda: len(snapshots) == 1)
        for _ in range(5):
            store.notify_change(PATH)
        await eventually(lambda: len(snapshots) == 2)
        for _ in range(10):
            await store.exists(PATH, "x")
        assert len(snapshots) == 2
        subscription.unsubscribe()

    @pytest.mark.asyncio
    async def test_resubscribes_after_outage(self, store, backend):
        snapshots, errors = [], []
        backend.set_available(False)
        subscription = store.subscribe(PATH, snapshots.append, errors.append)
        await eventually(lambda: len(errors) >= 1)
        assert isinstance(errors[0], StoreUnavailable)
        assert snapshots == []

        backend.set_available(True)
        await eventually(lambda: len(snapshots) == 1)
        subscription.unsubscribe()

    @pytest.mark.asyncio
    async def test_listener_errors_do_not_kill_subscription(self, store):
        seen = []

        def listener(records):
            seen.append(records)
            if len(seen) == 1:
                raise RuntimeError("boom")

        subscription = store.subscribe(PATH, listener)
        await eventually(lambda: len(seen) == 1)
        await store.create(PATH, {}, id="a")
        await eventually(lambda: len(seen) == 2)
        assert subscription.active
        subscription.unsubscribe()

    @pytest.mark.asyncio
    async def test_notify_change_wakes_listeners(self, store, backend):
        snapshots = []
        subscription = store.subscribe(PATH, snapshots.append)
        await eventually(lambda: len(snapshots) == 1)
        # a write made by another process, seen only through the relay
        await backend.insert(PATH, "remote", {"createdAt": 1, "updatedAt": 1})
        store.notify_change(PATH)
        await eventually(lambda: len(snapshots) == 2)
        assert [Document.from_record(r).id for r in snapshots[-1]] == ["remote"]
        subscription.unsubscribe()
