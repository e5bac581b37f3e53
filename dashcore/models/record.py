# dashcore/models/record.py
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from pydantic import BaseModel, Field

# Fields that live on the record envelope rather than in `fields`.
KEY_FIELD = "id"
TIMESTAMP_FIELDS = ("createdAt", "updatedAt")


class Record(BaseModel):
    """
    A persisted entity as the store adapter sees it.
    Timestamps are epoch milliseconds, exactly as they sit in the store.
    """
    id: str
    fields: Dict[str, Any] = Field(default_factory=dict)
    createdAt: Optional[int] = None
    updatedAt: Optional[int] = None

    def value(self, name: str) -> Any:
        if name == KEY_FIELD:
            return self.id
        if name == "createdAt":
            return self.createdAt
        if name == "updatedAt":
            return self.updatedAt
        return self.fields.get(name)


class Document(BaseModel):
    """
    A record as handed out by a repository: timestamps converted to
    ISO-8601 strings.
    """
    id: str
    fields: Dict[str, Any] = Field(default_factory=dict)
    createdAt: Optional[str] = None
    updatedAt: Optional[str] = None

    def get(self, name: str, default: Any = None) -> Any:
        if name == KEY_FIELD:
            return self.id
        if name in TIMESTAMP_FIELDS:
            return getattr(self, name)
        return self.fields.get(name, default)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            **self.fields,
            "createdAt": self.createdAt,
            "updatedAt": self.updatedAt,
        }

    @classmethod
    def from_record(cls, record: Record) -> "Document":
        return cls(
            id=record.id,
            fields=dict(record.fields),
            createdAt=ms_to_iso(record.createdAt),
            updatedAt=ms_to_iso(record.updatedAt),
        )


def ms_to_iso(value: Optional[int]) -> Optional[str]:
    if value is None:
        return None
    stamp = datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    return stamp.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def iso_to_ms(value: Optional[str]) -> Optional[int]:
    if not value:
        return None
    stamp = datetime.fromisoformat(value)
    if stamp.tzinfo is None:
        stamp = stamp.replace(tzinfo=timezone.utc)
    return int(stamp.timestamp() * 1000)


def values_equal(left: Any, right: Any) -> bool:
    # equalTo semantics: True must not match 1
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool) and left is right
    return left == right


def matches(record: Record, filters: Iterable[tuple]) -> bool:
    return all(values_equal(record.value(name), expected) for name, expected in filters)


def _sortable(value: Any) -> tuple:
    if isinstance(value, (bool, int, float)):
        return (0, value)
    if isinstance(value, str):
        return (1, value)
    return (2, str(value))


def sort_records(records: Iterable[Record], field: str, direction: str) -> List[Record]:
    """
    Stable sort on one field. Records missing the field go last in
    either direction.
    """
    records = list(records)
    present = [r for r in records if r.value(field) is not None]
    missing = [r for r in records if r.value(field) is None]
    present.sort(key=lambda r: _sortable(r.value(field)), reverse=(direction == "desc"))
    return present + missing
