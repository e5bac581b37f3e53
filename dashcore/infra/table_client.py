# dashcore/infra/table_client.py
import json
import logging
from contextlib import contextmanager
from typing import Any, Dict, List, Optional, Tuple

from azure.core.exceptions import (
    HttpResponseError,
    ResourceExistsError,
    ResourceNotFoundError,
    ServiceRequestError,
    ServiceResponseError,
)
from azure.data.tables import EdmType, EntityProperty, UpdateMode
from azure.data.tables.aio import TableServiceClient

from dashcore.errors import Conflict, NotFound, StoreUnavailable

logger = logging.getLogger(__name__)

# property listing which fields hold JSON-encoded dicts/lists
JSON_FIELDS = "_json"


def encode_partition(path: str) -> str:
    # '/' is not allowed in PartitionKey
    return path.replace("/", "|")


def to_entity(partition: str, key: str, fields: Dict[str, Any]) -> Dict[str, Any]:
    entity: Dict[str, Any] = {"PartitionKey": encode_partition(partition), "RowKey": key}
    json_fields = []
    for name, value in fields.items():
        if value is None:
            continue
        if isinstance(value, (dict, list)):
            entity[name] = json.dumps(value)
            json_fields.append(name)
        elif isinstance(value, bool):
            entity[name] = value
        elif isinstance(value, int):
            entity[name] = EntityProperty(value, EdmType.INT64)
        else:
            entity[name] = value
    if json_fields:
        entity[JSON_FIELDS] = ",".join(json_fields)
    return entity


def from_entity(entity: Dict[str, Any]) -> Tuple[str, Dict[str, Any]]:
    key = entity["RowKey"]
    json_fields = set(filter(None, (entity.get(JSON_FIELDS) or "").split(",")))
    fields = {}
    for name, value in entity.items():
        if name in ("PartitionKey", "RowKey", "Timestamp", JSON_FIELDS):
            continue
        if isinstance(value, EntityProperty):
            value = value.value
        if name in json_fields and isinstance(value, str):
            value = json.loads(value)
        fields[name] = value
    return key, fields


def filter_clause(field: str, value: Any) -> Tuple[str, Dict[str, Any]]:
    """
    Equality clause for a native query. Integers are written as Int64
    literals to match how ``to_entity`` stores them; the SDK would send
    small ints as Int32.
    """
    if isinstance(value, int) and not isinstance(value, bool):
        return f"{field} eq {value}L", {}
    return f"{field} eq @value", {"value": value}


@contextmanager
def translate_errors(partition: str, key: Optional[str] = None):
    """Map azure-core exceptions onto the store's error taxonomy."""
    try:
        yield
    except ResourceNotFoundError:
        raise NotFound(partition, key or "")
    except ResourceExistsError:
        raise Conflict(partition, key or "")
    except (ServiceRequestError, ServiceResponseError) as e:
        raise StoreUnavailable(f"Table storage unreachable: {e}")
    except HttpResponseError as e:
        if e.status_code is None or e.status_code >= 500 or e.status_code == 429:
            raise StoreUnavailable(f"Table storage error {e.status_code}: {e.message}")
        raise


class TableStoreBackend:
    """
    Azure Table Storage backend. One table holds every collection:
    PartitionKey is the encoded collection path, RowKey the record id.
    Native queries are a partition scan plus at most one equality filter,
    returned in RowKey order.
    """

    def __init__(self, connection_string: Optional[str], table_name: str):
        self._conn_str = connection_string
        self._table_name = table_name
        self._service = None
        self._table = None

    async def open(self):
        if not self._conn_str:
            raise StoreUnavailable("AZURE_STORAGE_CONNECTION_STRING is not configured")
        self._service = TableServiceClient.from_connection_string(conn_str=self._conn_str)
        with translate_errors(self._table_name):
            self._table = await self._service.create_table_if_not_exists(table_name=self._table_name)
        logger.info("Connected to table '%s'", self._table_name)

    async def close(self):
        if self._table is not None:
            await self._table.close()
            self._table = None
        if self._service is not None:
            await self._service.close()
            self._service = None

    def _client(self):
        if self._table is None:
            raise StoreUnavailable("Table store is not open")
        return self._table

    async def fetch(self, partition: str, key: str) -> Optional[Dict[str, Any]]:
        table = self._client()
        try:
            with translate_errors(partition, key):
                entity = await table.get_entity(
                    partition_key=encode_partition(partition), row_key=key
                )
        except NotFound:
            return None
        return from_entity(entity)[1]

    async def insert(self, partition: str, key: str, entity: Dict[str, Any]):
        table = self._client()
        with translate_errors(partition, key):
            await table.create_entity(entity=to_entity(partition, key, entity))

    async def replace(self, partition: str, key: str, entity: Dict[str, Any]):
        table = self._client()
        with translate_errors(partition, key):
            await table.update_entity(
                entity=to_entity(partition, key, entity),
                mode=UpdateMode.REPLACE,
            )

    async def remove(self, partition: str, key: str):
        table = self._client()
        with translate_errors(partition, key):
            # delete_entity is a no-op on missing entities
            await table.delete_entity(partition_key=encode_partition(partition), row_key=key)

    async def query(
        self,
        partition: str,
        field: Optional[str] = None,
        value: Any = None,
        limit: Optional[int] = None,
    ) -> List[Tuple[str, Dict[str, Any]]]:
        table = self._client()
        query_filter = "PartitionKey eq @pk"
        parameters: Dict[str, Any] = {"pk": encode_partition(partition)}
        if field is not None:
            clause, extra = filter_clause(field, value)
            query_filter += f" and {clause}"
            parameters.update(extra)

        rows = []
        with translate_errors(partition):
            async for entity in table.query_entities(
                query_filter=query_filter,
                parameters=parameters,
                results_per_page=limit,
            ):
                rows.append(from_entity(entity))
                if limit is not None and len(rows) >= limit:
                    break
        return rows
