# dashcore/infra/store.py
"""
Store adapter: document-style create/read/update/delete, ordered scans,
batches and realtime subscriptions on top of a backend that only knows
point operations and key-ordered scans with one equality filter.

Path layout: records live at ``{collection path}/{id}``, where the
collection path is any ``/``-separated string such as
``electronics/notifications``. Timestamps are stored as epoch
milliseconds.
"""
import asyncio
import inspect
import logging
import re
import time
import uuid
from dataclasses import dataclass, field
from typing import (
    Any,
    Callable,
    Dict,
    Iterable,
    List,
    Mapping,
    Optional,
    Protocol,
    Set,
    Tuple,
    Union,
)

from dashcore.errors import (
    DashboardError,
    NotFound,
    PartialFailure,
    StoreUnavailable,
    ValidationError,
)
from dashcore.models.change_message import ChangeMessage
from dashcore.models.record import KEY_FIELD, Record, matches, sort_records

logger = logging.getLogger(__name__)

ASC = "asc"
DESC = "desc"

_FORBIDDEN_KEY_CHARS = re.compile(r"[/\\#?]")
_FIELD_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

Filters = Union[Mapping[str, Any], Iterable[Tuple[str, Any]], None]


def now_ms() -> int:
    return int(time.time() * 1000)


class StoreBackend(Protocol):
    async def open(self) -> None: ...
    async def close(self) -> None: ...
    async def fetch(self, partition: str, key: str) -> Optional[Dict[str, Any]]: ...
    async def insert(self, partition: str, key: str, entity: Dict[str, Any]) -> None: ...
    async def replace(self, partition: str, key: str, entity: Dict[str, Any]) -> None: ...
    async def remove(self, partition: str, key: str) -> None: ...
    async def query(
        self, partition: str, field: Optional[str] = None, value: Any = None,
        limit: Optional[int] = None,
    ) -> List[Tuple[str, Dict[str, Any]]]: ...


class ChangePublisher(Protocol):
    async def open(self) -> None: ...
    async def publish(self, message: ChangeMessage) -> None: ...
    async def close(self) -> None: ...


def validate_path(path: str) -> str:
    if not isinstance(path, str) or not path.strip("/"):
        raise ValidationError(f"Invalid collection path: {path!r}")
    segments = path.strip("/").split("/")
    for segment in segments:
        if not segment or _FORBIDDEN_KEY_CHARS.search(segment):
            raise ValidationError(f"Invalid collection path: {path!r}")
    return "/".join(segments)


def validate_id(record_id: str) -> str:
    if not isinstance(record_id, str) or not record_id or _FORBIDDEN_KEY_CHARS.search(record_id):
        raise ValidationError(f"Invalid record id: {record_id!r}")
    return record_id


def validate_field(name: str) -> str:
    if not isinstance(name, str) or not _FIELD_NAME.match(name):
        raise ValidationError(f"Invalid field name: {name!r}")
    return name


def normalize_filters(filters: Filters) -> Tuple[Tuple[str, Any], ...]:
    """Accept a mapping or a list of (field, value) pairs, keep order."""
    if filters is None:
        return ()
    if isinstance(filters, Mapping):
        pairs = list(filters.items())
    else:
        pairs = []
        for item in filters:
            if not isinstance(item, (tuple, list)) or len(item) != 2:
                raise ValidationError(f"Filter must be a (field, value) pair: {item!r}")
            pairs.append((item[0], item[1]))
    return tuple((validate_field(name), value) for name, value in pairs)


def _to_record(key: str, entity: Dict[str, Any]) -> Record:
    fields = dict(entity)
    created_at = fields.pop("createdAt", None)
    updated_at = fields.pop("updatedAt", None)
    return Record(id=key, fields=fields, createdAt=created_at, updatedAt=updated_at)


def _check_data(data: Any) -> Dict[str, Any]:
    if not isinstance(data, Mapping):
        raise ValidationError("Record data must be a mapping")
    for name in data:
        if not isinstance(name, str) or not name:
            raise ValidationError(f"Invalid field name: {name!r}")
    return dict(data)


async def invoke_callback(callback: Optional[Callable], argument: Any, where: str):
    """Run a sync or async listener; listener failures are logged, not raised."""
    if callback is None:
        return
    try:
        result = callback(argument)
        if inspect.isawaitable(result):
            await result
    except Exception:
        logger.exception("Listener for %s raised", where)


@dataclass
class BatchOperation:
    type: str
    id: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)


@dataclass
class BatchItemResult:
    index: int
    type: str
    id: Optional[str]
    ok: bool
    record: Optional[Record] = None
    error: Optional[DashboardError] = None


@dataclass
class BatchResult:
    items: List[BatchItemResult] = field(default_factory=list)

    @property
    def succeeded(self) -> int:
        return sum(1 for item in self.items if item.ok)

    @property
    def failed(self) -> int:
        return len(self.items) - self.succeeded

    @property
    def ok(self) -> bool:
        return self.failed == 0

    @property
    def partial(self) -> bool:
        return 0 < self.failed < len(self.items)

    def raise_for_failures(self):
        if self.ok:
            return
        if self.partial:
            raise PartialFailure(self.items)
        raise self.items[0].error


class Subscription:
    """
    One realtime listener on a collection path. Delivers the full
    snapshot once on start and again after every burst of changes.
    Bursts that land while a snapshot is being read collapse into one
    follow-up delivery.
    """

    def __init__(
        self,
        adapter: "StoreAdapter",
        path: str,
        on_change: Callable[[List[Record]], Any],
        on_error: Optional[Callable[[Exception], Any]] = None,
        retry_base: float = 0.5,
        retry_max: float = 30.0,
    ):
        self.path = path
        self._adapter = adapter
        self._on_change = on_change
        self._on_error = on_error
        self._retry_base = retry_base
        self._retry_max = retry_max
        self._active = True
        self._dirty = asyncio.Event()
        self._dirty.set()
        self._task = asyncio.get_running_loop().create_task(self._run())

    @property
    def active(self) -> bool:
        return self._active

    def notify(self):
        if self._active:
            self._dirty.set()

    def unsubscribe(self):
        if not self._active:
            return
        self._active = False
        self._adapter._detach(self)
        self._task.cancel()

    __call__ = unsubscribe

    async def _run(self):
        delay = self._retry_base
        while self._active:
            await self._dirty.wait()
            self._dirty.clear()
            try:
                snapshot = await self._adapter.snapshot(self.path)
            except StoreUnavailable as e:
                if not self._active:
                    break
                logger.warning(
                    "Snapshot for %s failed, resubscribing in %.1fs: %s", self.path, delay, e
                )
                await invoke_callback(self._on_error, e, self.path)
                await asyncio.sleep(delay)
                delay = min(delay * 2, self._retry_max)
                self._dirty.set()
                continue
            delay = self._retry_base
            if self._active:
                await invoke_callback(self._on_change, snapshot, self.path)


class StoreAdapter:
    """
    Explicitly constructed store client. The application entry point owns
    its lifecycle through ``init()`` and ``close()``.

    Custom ids: ``create`` with an ``id`` that already exists fails with
    ``Conflict``; it never overwrites. Without an id a uuid4 is assigned.
    """

    def __init__(
        self,
        backend: StoreBackend,
        *,
        clock: Callable[[], int] = now_ms,
        publisher: Optional[ChangePublisher] = None,
        retry_base: float = 0.5,
        retry_max: float = 30.0,
    ):
        self.backend = backend
        self._clock = clock
        self._publisher = publisher
        self._retry_base = retry_base
        self._retry_max = retry_max
        self._subscriptions: Dict[str, Set[Subscription]] = {}

    async def init(self):
        await self.backend.open()
        if self._publisher is not None:
            await self._publisher.open()

    async def close(self):
        for subscriptions in list(self._subscriptions.values()):
            for subscription in list(subscriptions):
                subscription.unsubscribe()
        if self._publisher is not None:
            await self._publisher.close()
        await self.backend.close()

    async def create(self, path: str, data: Mapping[str, Any], id: Optional[str] = None) -> Record:
        path = validate_path(path)
        fields = _check_data(data)
        fields.pop(KEY_FIELD, None)
        record_id = validate_id(id) if id is not None else str(uuid.uuid4())
        stamp = self._clock()
        entity = {**fields, "createdAt": stamp, "updatedAt": stamp}
        await self.backend.insert(path, record_id, entity)
        await self._changed(path, record_id, "create")
        return _to_record(record_id, entity)

    async def get_by_id(self, path: str, id: str) -> Record:
        path = validate_path(path)
        entity = await self.backend.fetch(path, validate_id(id))
        if entity is None:
            raise NotFound(path, id)
        return _to_record(id, entity)

    async def exists(self, path: str, id: str) -> bool:
        path = validate_path(path)
        return await self.backend.fetch(path, validate_id(id)) is not None

    async def scan(
        self,
        path: str,
        *,
        equality_filter: Optional[Tuple[str, Any]] = None,
        order_field: str = "createdAt",
        order_direction: str = DESC,
        limit: Optional[int] = None,
    ) -> List[Record]:
        """
        Ordered scan with at most one equality filter. The backend only
        scans in ascending key order, so any other ordering is done here
        after fetching the whole (filtered) collection.
        """
        path = validate_path(path)
        if order_direction not in (ASC, DESC):
            raise ValidationError(f"Invalid order direction: {order_direction!r}")
        if limit is not None and (not isinstance(limit, int) or limit <= 0):
            raise ValidationError(f"Invalid limit: {limit!r}")
        validate_field(order_field)

        field_name, value = (None, None)
        if equality_filter is not None:
            field_name, value = equality_filter
            validate_field(field_name)

        key_ordered = order_field == KEY_FIELD and order_direction == ASC
        rows = await self.backend.query(
            path, field_name, value, limit if key_ordered else None
        )
        records = [_to_record(key, entity) for key, entity in rows]
        if not key_ordered:
            records = sort_records(records, order_field, order_direction)
            if limit is not None:
                records = records[:limit]
        return records

    async def snapshot(self, path: str) -> List[Record]:
        return await self.scan(path, order_field=KEY_FIELD, order_direction=ASC)

    async def update(self, path: str, id: str, partial: Mapping[str, Any]) -> Record:
        """Merge fields into an existing record. A None value removes the field."""
        path = validate_path(path)
        changes = _check_data(partial)
        for reserved in (KEY_FIELD, "createdAt"):
            changes.pop(reserved, None)
        entity = await self.backend.fetch(path, validate_id(id))
        if entity is None:
            raise NotFound(path, id)
        for name, value in changes.items():
            if value is None:
                entity.pop(name, None)
            else:
                entity[name] = value
        entity["updatedAt"] = self._clock()
        await self.backend.replace(path, id, entity)
        await self._changed(path, id, "update")
        return _to_record(id, entity)

    async def delete(self, path: str, id: str):
        path = validate_path(path)
        await self.backend.remove(path, validate_id(id))
        await self._changed(path, id, "delete")

    async def count(self, path: str, filters: Filters = None) -> int:
        pairs = normalize_filters(filters)
        records = await self.scan(
            path,
            equality_filter=pairs[0] if pairs else None,
            order_field=KEY_FIELD,
            order_direction=ASC,
        )
        return sum(1 for record in records if matches(record, pairs[1:]))

    async def batch(
        self, path: str, operations: Iterable[Union[BatchOperation, Mapping[str, Any]]]
    ) -> BatchResult:
        """
        Run operations one after another. A failing item does not stop the
        rest; the result lists every item's outcome.
        """
        result = BatchResult()
        for index, op in enumerate(operations):
            if isinstance(op, Mapping):
                op = BatchOperation(type=op.get("type"), id=op.get("id"), data=op.get("data") or {})
            item = BatchItemResult(index=index, type=op.type, id=op.id, ok=False)
            try:
                if op.type == "create":
                    item.record = await self.create(path, op.data, op.id)
                    item.id = item.record.id
                elif op.type == "update":
                    item.record = await self.update(path, op.id, op.data)
                elif op.type == "delete":
                    await self.delete(path, op.id)
                else:
                    raise ValidationError(f"Unknown batch operation type: {op.type!r}")
                item.ok = True
            except (DashboardError, ValueError) as e:
                if not isinstance(e, DashboardError):
                    e = ValidationError(str(e))
                item.error = e
            result.items.append(item)
        if not result.ok:
            logger.warning("Batch on %s: %d of %d failed", path, result.failed, len(result.items))
        return result

    def subscribe(
        self,
        path: str,
        on_change: Callable[[List[Record]], Any],
        on_error: Optional[Callable[[Exception], Any]] = None,
    ) -> Subscription:
        path = validate_path(path)
        subscription = Subscription(
            self, path, on_change, on_error,
            retry_base=self._retry_base, retry_max=self._retry_max,
        )
        self._subscriptions.setdefault(path, set()).add(subscription)
        return subscription

    def notify_change(self, path: str):
        """Wake every local subscription on ``path``."""
        for subscription in list(self._subscriptions.get(path.strip("/"), ())):
            subscription.notify()

    def _detach(self, subscription: Subscription):
        subscriptions = self._subscriptions.get(subscription.path)
        if subscriptions is not None:
            subscriptions.discard(subscription)
            if not subscriptions:
                del self._subscriptions[subscription.path]

    async def _changed(self, path: str, record_id: str, kind: str):
        self.notify_change(path)
        if self._publisher is None:
            return
        try:
            await self._publisher.publish(ChangeMessage(path=path, id=record_id, kind=kind))
        except Exception as e:
            # the write already succeeded; other processes catch up on their next poll
            logger.warning("Could not relay %s change on %s/%s: %s", kind, path, record_id, e)
