# dashcore/infra/memory_store.py
import asyncio
import copy
from typing import Any, Dict, List, Optional, Tuple

from dashcore.errors import Conflict, NotFound, StoreUnavailable
from dashcore.models.record import values_equal


class MemoryStoreBackend:
    """
    In-process backend with the same native capabilities as the table
    backend: point reads and writes, and key-ordered scans with at most
    one equality filter. Used for local runs and tests.
    """

    def __init__(self):
        self._partitions: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self.available = True
        # every native query issued: (partition, field, value, limit)
        self.query_log: List[Tuple[str, Optional[str], Any, Optional[int]]] = []

    def set_available(self, available: bool):
        self.available = available

    async def _io(self):
        # yield like a network call would, so concurrent callers interleave
        await asyncio.sleep(0)
        if not self.available:
            raise StoreUnavailable("memory store is offline")

    async def open(self):
        await self._io()

    async def close(self):
        pass

    async def fetch(self, partition: str, key: str) -> Optional[Dict[str, Any]]:
        await self._io()
        entity = self._partitions.get(partition, {}).get(key)
        return copy.deepcopy(entity) if entity is not None else None

    async def insert(self, partition: str, key: str, entity: Dict[str, Any]):
        await self._io()
        rows = self._partitions.setdefault(partition, {})
        if key in rows:
            raise Conflict(partition, key)
        rows[key] = copy.deepcopy(entity)

    async def replace(self, partition: str, key: str, entity: Dict[str, Any]):
        await self._io()
        rows = self._partitions.get(partition, {})
        if key not in rows:
            raise NotFound(partition, key)
        rows[key] = copy.deepcopy(entity)

    async def remove(self, partition: str, key: str):
        await self._io()
        self._partitions.get(partition, {}).pop(key, None)

    async def query(
        self,
        partition: str,
        field: Optional[str] = None,
        value: Any = None,
        limit: Optional[int] = None,
    ) -> List[Tuple[str, Dict[str, Any]]]:
        await self._io()
        self.query_log.append((partition, field, value, limit))
        rows = []
        for key in sorted(self._partitions.get(partition, {})):
            entity = self._partitions[partition][key]
            if field is not None and not values_equal(entity.get(field), value):
                continue
            rows.append((key, copy.deepcopy(entity)))
            if limit is not None and len(rows) >= limit:
                break
        return rows
