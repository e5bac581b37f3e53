# dashcore/services/inbox.py
import logging
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional

from dashcore.errors import Conflict, NotFound
from dashcore.models.notification import Notification
from dashcore.models.record import Document, iso_to_ms
from dashcore.services.repository import Repository
from dashcore.services.urgency import urgency_sort_key

logger = logging.getLogger(__name__)


def sort_notifications(notifications: List[Notification]) -> List[Notification]:
    return sorted(notifications, key=lambda n: urgency_sort_key(n.urgencyTier, n.dayOffset))


class NotificationInbox:
    """
    One user's notifications plus unread counters.

    Counters are recomputed from the full set on every load or snapshot
    and nudged by +/-1 on local mutations in between. Local adjustments
    are provisional: the next reload overwrites them.
    """

    def __init__(
        self,
        repository: Repository,
        user_id: str,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.repository = repository
        self.user_id = user_id
        self._clock = clock
        self._notifications: List[Notification] = []
        self._unread: Counter = Counter()
        self._loaded = False

    @property
    def notifications(self) -> List[Notification]:
        return list(self._notifications)

    @property
    def unread_count(self) -> int:
        return sum(self._unread.values())

    @property
    def unread_by_category(self) -> Dict[str, int]:
        return {category: n for category, n in self._unread.items() if n > 0}

    @property
    def has_unread(self) -> bool:
        return self.unread_count > 0

    async def load(self) -> List[Notification]:
        docs = await self.repository.load({"userId": self.user_id}, order_by="createdAt", direction="desc")
        self.apply_snapshot(docs)
        return self.notifications

    def apply_snapshot(self, docs: List[Document]):
        notifications = []
        for doc in docs:
            if doc.get("userId") != self.user_id:
                continue
            try:
                notifications.append(Notification.from_document(doc))
            except ValueError as e:
                logger.warning("Skipping malformed notification %s: %s", doc.id, e)
        unread = Counter(n.category for n in notifications if not n.read)
        if self._loaded and unread != self._unread:
            logger.info(
                "Unread counters drifted for %s: had %d, store says %d",
                self.user_id, self.unread_count, sum(unread.values()),
            )
        self._notifications = sort_notifications(notifications)
        self._unread = unread
        self._loaded = True

    def _find(self, notification_id: str) -> Optional[Notification]:
        return next((n for n in self._notifications if n.id == notification_id), None)

    async def _check_owner(self, notification_id: str):
        if self._find(notification_id) is not None:
            return
        doc = await self.repository.get_by_id(notification_id)
        if doc.get("userId") != self.user_id:
            raise NotFound(self.repository.path, notification_id)

    def _decrement(self, category: str):
        if self._unread[category] > 0:
            self._unread[category] -= 1

    async def mark_as_read(self, notification_id: str) -> Notification:
        await self._check_owner(notification_id)
        doc = await self.repository.update(
            notification_id, {"read": True, "readAt": self._clock().isoformat()}
        )
        current = self._find(notification_id)
        if current is not None and not current.read:
            self._decrement(current.category)
        updated = Notification.from_document(doc)
        self._notifications = sort_notifications(
            [updated if n.id == notification_id else n for n in self._notifications]
        )
        return updated

    async def mark_all_as_read(self) -> int:
        unread = [n for n in self._notifications if not n.read]
        stamp = self._clock().isoformat()
        result = await self.repository.batch(
            {"type": "update", "id": n.id, "data": {"read": True, "readAt": stamp}} for n in unread
        )
        done = {item.id for item in result.items if item.ok}
        for notification in unread:
            if notification.id in done:
                self._decrement(notification.category)
        self._notifications = [
            n.model_copy(update={"read": True}) if n.id in done else n for n in self._notifications
        ]
        result.raise_for_failures()
        return len(done)

    async def delete(self, notification_id: str):
        await self._check_owner(notification_id)
        await self.repository.remove(notification_id)
        current = self._find(notification_id)
        if current is not None:
            if not current.read:
                self._decrement(current.category)
            self._notifications = [n for n in self._notifications if n.id != notification_id]

    async def create(self, data: Mapping[str, Any]) -> Notification:
        notification = Notification.model_validate({**data, "userId": self.user_id, "scope": self.repository.scope})
        existing = await self.repository.load(
            [
                ("subjectType", notification.subjectType.value),
                ("subjectId", notification.subjectId),
                ("userId", self.user_id),
            ],
            limit=1,
        )
        if existing:
            # one notification per subject and user
            raise Conflict(self.repository.path, existing[0].id)
        doc = await self.repository.add(notification.to_fields())
        created = Notification.from_document(doc)
        self._notifications = sort_notifications(self._notifications + [created])
        if not created.read:
            self._unread[created.category] += 1
        return created

    async def delete_old_read(self, days: int = 30) -> int:
        """Delete read notifications created more than ``days`` ago."""
        cutoff = iso_to_ms((self._clock() - timedelta(days=days)).isoformat())
        old = [
            n for n in self._notifications
            if n.read and n.createdAt and iso_to_ms(n.createdAt) < cutoff
        ]
        result = await self.repository.batch({"type": "delete", "id": n.id} for n in old)
        done = {item.id for item in result.items if item.ok}
        self._notifications = [n for n in self._notifications if n.id not in done]
        result.raise_for_failures()
        return len(done)
