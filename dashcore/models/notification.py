# dashcore/models/notification.py
from enum import Enum
from typing import Any, Dict, NamedTuple, Optional

from pydantic import BaseModel, Field

from dashcore.models.record import Document
from dashcore.models.subjects import SubjectType


class UrgencyTier(str, Enum):
    UPCOMING = "upcoming"
    DUE_TODAY = "dueToday"
    OVERDUE = "overdue"


class NaturalKey(NamedTuple):
    """Deduplication identity: at most one notification per key."""
    subjectType: str
    subjectId: str
    userId: str
    scope: str


class Notification(BaseModel):
    id: Optional[str] = None
    subjectType: SubjectType
    subjectId: str
    urgencyTier: UrgencyTier
    dayOffset: int
    label: str
    title: str
    message: str
    priority: str = "medium"
    category: str
    read: bool = False
    userId: str
    scope: str
    dueDate: str
    generatedFor: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)
    createdAt: Optional[str] = None
    updatedAt: Optional[str] = None

    @property
    def natural_key(self) -> NaturalKey:
        return NaturalKey(self.subjectType.value, self.subjectId, self.userId, self.scope)

    @classmethod
    def from_document(cls, doc: Document) -> "Notification":
        return cls.model_validate(doc.to_dict())

    def to_fields(self) -> Dict[str, Any]:
        """Payload for the store: everything except the record envelope."""
        return self.model_dump(
            mode="json",
            exclude={"id", "createdAt", "updatedAt"},
            exclude_none=True,
        )
