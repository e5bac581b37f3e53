# dashcore/services/repository.py
"""
Per-collection CRUD scoped to one business vertical.

Every collection lives under ``{scope}/{collection}``, so a caller can
only ever read its own vertical. Writes stamp ``scope`` and
``createdBy``.

The mode is fixed per instance:

* ``CACHED``: ``items`` is updated optimistically by this instance's own
  writes and by ``load``; ``subscribe`` polls.
* ``REALTIME``: ``items`` is written only by subscription snapshots;
  ``subscribe`` listens on the store.
"""
from enum import Enum
from typing import Any, Callable, Iterable, List, Mapping, Optional, Union

from dashcore.errors import ValidationError
from dashcore.infra.store import BatchOperation, BatchResult, Filters, StoreAdapter, validate_path
from dashcore.models.identity import CurrentUser
from dashcore.models.record import Document, Record
from dashcore.services import query_planner
from dashcore.services.query_planner import Query
from dashcore.services.refresh import PollingSubscription

RESERVED_FIELDS = frozenset({"id", "scope", "createdAt", "updatedAt", "createdBy"})


class RepositoryMode(str, Enum):
    CACHED = "cached"
    REALTIME = "realtime"


class Repository:
    def __init__(
        self,
        store: StoreAdapter,
        collection: str,
        user: CurrentUser,
        *,
        mode: RepositoryMode = RepositoryMode.CACHED,
        poll_interval: float = 30.0,
    ):
        if not user.scope:
            raise ValidationError("A scope is required for data access")
        self.store = store
        self.collection = collection
        self.user = user
        self.mode = RepositoryMode(mode)
        self.poll_interval = poll_interval
        self.path = validate_path(f"{user.scope}/{collection}")
        self._items: List[Document] = []

    @property
    def scope(self) -> str:
        return self.user.scope

    @property
    def items(self) -> List[Document]:
        return list(self._items)

    async def load(
        self,
        filters: Filters = None,
        order_by: str = "createdAt",
        direction: str = "desc",
        limit: Optional[int] = None,
    ) -> List[Document]:
        query = Query.build(filters, order_by, direction, limit)
        records = await query_planner.execute(self.store, self.path, query)
        docs = [Document.from_record(r) for r in records]
        if self.mode is RepositoryMode.CACHED:
            self._items = list(docs)
        return docs

    async def get_by_id(self, id: str) -> Document:
        return Document.from_record(await self.store.get_by_id(self.path, id))

    async def exists(self, id: str) -> bool:
        return await self.store.exists(self.path, id)

    async def count(self, filters: Filters = None) -> int:
        return await self.store.count(self.path, filters)

    def _stamp(self, data: Mapping[str, Any]) -> dict:
        fields = {k: v for k, v in dict(data).items() if k not in RESERVED_FIELDS}
        fields["scope"] = self.scope
        fields["createdBy"] = self.user.id
        return fields

    @staticmethod
    def _check_partial(partial: Mapping[str, Any]) -> dict:
        changes = dict(partial)
        reserved = RESERVED_FIELDS.intersection(changes)
        if reserved:
            raise ValidationError(f"Fields cannot be updated: {', '.join(sorted(reserved))}")
        return changes

    async def add(self, data: Mapping[str, Any], id: Optional[str] = None) -> Document:
        doc = Document.from_record(await self.store.create(self.path, self._stamp(data), id))
        if self.mode is RepositoryMode.CACHED:
            self._items.insert(0, doc)
        return doc

    async def update(self, id: str, partial: Mapping[str, Any]) -> Document:
        doc = Document.from_record(await self.store.update(self.path, id, self._check_partial(partial)))
        if self.mode is RepositoryMode.CACHED:
            self._items = [doc if item.id == id else item for item in self._items]
        return doc

    async def remove(self, id: str):
        await self.store.delete(self.path, id)
        if self.mode is RepositoryMode.CACHED:
            self._items = [item for item in self._items if item.id != id]

    async def batch(self, operations: Iterable[Union[BatchOperation, Mapping[str, Any]]]) -> BatchResult:
        prepared = []
        for op in operations:
            if isinstance(op, Mapping):
                op = BatchOperation(type=op.get("type"), id=op.get("id"), data=op.get("data") or {})
            if op.type == "create":
                op = BatchOperation(type=op.type, id=op.id, data=self._stamp(op.data))
            elif op.type == "update":
                op = BatchOperation(type=op.type, id=op.id, data=self._check_partial(op.data))
            prepared.append(op)
        result = await self.store.batch(self.path, prepared)
        if self.mode is RepositoryMode.CACHED:
            for item in result.items:
                if not item.ok:
                    continue
                if item.type == "create":
                    self._items.insert(0, Document.from_record(item.record))
                elif item.type == "update":
                    doc = Document.from_record(item.record)
                    self._items = [doc if d.id == doc.id else d for d in self._items]
                elif item.type == "delete":
                    self._items = [d for d in self._items if d.id != item.id]
        return result

    def subscribe(
        self,
        filters: Filters,
        on_change: Callable[[List[Document]], Any],
        *,
        order_by: str = "createdAt",
        direction: str = "desc",
        limit: Optional[int] = None,
        on_error: Optional[Callable[[Exception], Any]] = None,
    ):
        """
        Returns a handle with ``unsubscribe()``. Realtime repositories
        listen on the store; cached ones poll every ``poll_interval``.
        """
        query = Query.build(filters, order_by, direction, limit)

        if self.mode is RepositoryMode.REALTIME:
            def handle_snapshot(records: List[Record]):
                docs = [Document.from_record(r) for r in query_planner.apply(query, records)]
                self._items = docs
                return on_change(list(docs))

            return self.store.subscribe(self.path, handle_snapshot, on_error)

        async def poll():
            return await self.load(query.filters, query.order_field, query.order_direction, query.limit)

        return PollingSubscription(poll, on_change, on_error, interval=self.poll_interval)
