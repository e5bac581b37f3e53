"""
Repository tests: scope isolation, stamping, cache behaviour and
subscriptions in both modes.
"""

import pytest

from dashcore.errors import ValidationError
from dashcore.models.identity import CurrentUser
from dashcore.services.repository import Repository, RepositoryMode

from conftest import eventually


class TestScoping:
    """Every repository only sees its own vertical."""

    @pytest.mark.asyncio
    async def test_writes_stamp_scope_and_creator(self, store, admin):
        repo = Repository(store, "sales", admin)
        doc = await repo.add({"customerName": "Asha", "scope": "furniture", "createdBy": "x"})
        assert doc.get("scope") == "electronics"
        assert doc.get("createdBy") == "admin-1"
        assert doc.createdAt.endswith("Z")

    @pytest.mark.asyncio
    async def test_other_scope_is_invisible(self, store, admin):
        electronics = Repository(store, "sales", admin)
        furniture = Repository(store, "sales", CurrentUser(id="f-1", role="admin", scope="furniture"))
        await electronics.add({"n": 1})
        assert await furniture.load() == []
        assert await furniture.count() == 0
        assert await electronics.count() == 1

    def test_scope_required(self, store):
        with pytest.raises(ValidationError):
            Repository(store, "sales", CurrentUser(id="u", role="admin", scope=""))

    @pytest.mark.asyncio
    async def test_reserved_fields_cannot_be_updated(self, store, admin):
        repo = Repository(store, "sales", admin)
        doc = await repo.add({"n": 1})
        with pytest.raises(ValidationError):
            await repo.update(doc.id, {"scope": "furniture"})


class TestCachedMode:
    """Optimistic cache updates from the repository's own writes."""

    @pytest.mark.asyncio
    async def test_cache_follows_writes(self, store, admin):
        repo = Repository(store, "sales", admin)
        first = await repo.add({"n": 1})
        second = await repo.add({"n": 2})
        assert [d.id for d in repo.items] == [second.id, first.id]

        await repo.update(first.id, {"n": 10})
        assert repo.items[1].get("n") == 10

        await repo.remove(second.id)
        assert [d.id for d in repo.items] == [first.id]

    @pytest.mark.asyncio
    async def test_load_replaces_cache(self, store, admin):
        repo = Repository(store, "sales", admin)
        await repo.add({"status": "emi"})
        await repo.add({"status": "paid"})
        docs = await repo.load({"status": "emi"})
        assert [d.id for d in repo.items] == [d.id for d in docs]
        assert len(docs) == 1

    @pytest.mark.asyncio
    async def test_batch_updates_cache(self, store, admin):
        repo = Repository(store, "sales", admin)
        keep = await repo.add({"n": 1})
        result = await repo.batch([
            {"type": "create", "data": {"n": 2}},
            {"type": "delete", "id": keep.id},
        ])
        assert result.ok
        assert [d.get("n") for d in repo.items] == [2]
        assert repo.items[0].get("scope") == "electronics"

    @pytest.mark.asyncio
    async def test_polling_subscription(self, store, admin):
        repo = Repository(store, "sales", admin, poll_interval=0.01)
        seen = []
        subscription = repo.subscribe({"status": "emi"}, seen.append)
        await eventually(lambda: len(seen) >= 1)
        assert seen[0] == []

        await repo.add({"status": "emi"})
        await eventually(lambda: seen[-1] and seen[-1][0].get("status") == "emi")
        subscription.unsubscribe()
        assert not subscription.active


class TestRealtimeMode:
    """Items come only from store subscription snapshots."""

    @pytest.mark.asyncio
    async def test_writes_do_not_touch_items(self, store, admin):
        repo = Repository(store, "sales", admin, mode=RepositoryMode.REALTIME)
        await repo.add({"n": 1})
        await repo.load()
        assert repo.items == []

    @pytest.mark.asyncio
    async def test_subscription_applies_query(self, store, admin):
        repo = Repository(store, "sales", admin, mode=RepositoryMode.REALTIME)
        seen = []
        subscription = repo.subscribe({"status": "emi"}, seen.append, order_by="createdAt", direction="asc")
        await eventually(lambda: len(seen) == 1)

        first = await repo.add({"status": "emi"})
        await repo.add({"status": "paid"})
        second = await repo.add({"status": "emi"})
        await eventually(lambda: len(seen[-1]) == 2)

        assert [d.id for d in seen[-1]] == [first.id, second.id]
        assert [d.id for d in repo.items] == [first.id, second.id]
        subscription.unsubscribe()
