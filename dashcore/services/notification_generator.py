# dashcore/services/notification_generator.py
"""
Derives notifications from live business records.

Each run reads the source collections, classifies every open subject
against today's date, and reconciles the result with the notifications
already stored:

* one notification per natural key (subjectType, subjectId, userId, scope);
  existing ones are updated in place, never duplicated
* notifications whose subject no longer qualifies are deleted
* duplicates left behind by a concurrent run are collapsed, oldest wins

The store has no unique constraint, so creation is guarded by a fresh
read of the natural key right before the write. Two processes can still
both win that race; the next run collapses the pair.
"""
import asyncio
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone, tzinfo
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Set, Tuple

from dashcore.errors import DashboardError, NotFound
from dashcore.infra.store import StoreAdapter
from dashcore.models.identity import CurrentUser
from dashcore.models.notification import NaturalKey, Notification, UrgencyTier
from dashcore.models.record import Document
from dashcore.models.subjects import ComplaintSubject, Subject, SubjectType
from dashcore.services import subjects
from dashcore.services.refresh import RefreshCoalescer
from dashcore.services.repository import Repository
from dashcore.services.urgency import TIER_PRECEDENCE, Urgency, calendar_day, classify

logger = logging.getLogger(__name__)

NOTIFICATIONS = "notifications"

# fields rewritten when a subject's urgency moves on
TRACKED_FIELDS = ("urgencyTier", "dayOffset", "label", "title", "message", "priority", "dueDate", "data")


@dataclass(frozen=True)
class GeneratorPolicy:
    lookahead_days: Mapping[SubjectType, int] = field(
        default_factory=lambda: {
            SubjectType.INSTALLMENT: 7,
            SubjectType.DELIVERY: 7,
            SubjectType.COMPLAINT: 0,
        }
    )
    subject_types: frozenset = frozenset(SubjectType)

    def window(self, subject_type: SubjectType) -> int:
        return self.lookahead_days.get(subject_type, 0)

    @classmethod
    def from_days(cls, days: Mapping[str, int], subject_types: Optional[Iterable[str]] = None):
        return cls(
            lookahead_days={SubjectType(name): value for name, value in days.items()},
            subject_types=frozenset(SubjectType(t) for t in (subject_types or days)),
        )


@dataclass
class GenerationResult:
    created: int = 0
    updated: int = 0
    deleted: int = 0
    collapsed: int = 0
    dueToday: int = 0
    overdue: int = 0
    upcoming: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)
    skipped: bool = False

    def count(self, tier: UrgencyTier):
        if tier is UrgencyTier.OVERDUE:
            self.overdue += 1
        elif tier is UrgencyTier.DUE_TODAY:
            self.dueToday += 1
        else:
            self.upcoming += 1

    def error(self, subject_type: str, subject_id: str, exc: Exception):
        self.errors.append({"subjectType": subject_type, "subjectId": subject_id, "error": str(exc)})

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def combine(cls, passes: List["GenerationResult"]) -> "GenerationResult":
        """Writes add up across passes; tier counts and errors are the last pass's."""
        last = passes[-1]
        return cls(
            created=sum(p.created for p in passes),
            updated=sum(p.updated for p in passes),
            deleted=sum(p.deleted for p in passes),
            collapsed=sum(p.collapsed for p in passes),
            dueToday=last.dueToday,
            overdue=last.overdue,
            upcoming=last.upcoming,
            errors=list(last.errors),
        )


@dataclass(frozen=True)
class Candidate:
    subject: Subject
    urgency: Urgency
    user_id: str
    for_requester: bool


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _belongs(natural_key: NaturalKey, collection: str, record_id: str) -> bool:
    """Whether a notification's subject comes from the given source record."""
    if collection == subjects.COMPLAINTS:
        return natural_key.subjectType == SubjectType.COMPLAINT.value and natural_key.subjectId == record_id
    if natural_key.subjectType == SubjectType.DELIVERY.value:
        return natural_key.subjectId == record_id
    if natural_key.subjectType == SubjectType.INSTALLMENT.value:
        # installment ids are "<saleId>:<number>"
        return natural_key.subjectId.rpartition(":")[0] == record_id
    return False


class NotificationGenerator:
    def __init__(
        self,
        store: StoreAdapter,
        *,
        policy: Optional[GeneratorPolicy] = None,
        clock: Callable[[], datetime] = utc_now,
        tz: tzinfo = timezone.utc,
        role: str = "admin",
    ):
        self.store = store
        self.policy = policy or GeneratorPolicy()
        self._clock = clock
        self._tz = tz
        self._role = role
        self._runs: Dict[Tuple[str, str], RefreshCoalescer] = {}

    def _repository(self, scope: str, user_id: str, collection: str) -> Repository:
        return Repository(self.store, collection, CurrentUser(id=user_id, role=self._role, scope=scope))

    async def generate_all(self, scope: str, user_id: str) -> GenerationResult:
        """
        Incremental generation: cleanup, then upsert by natural key.

        A call for a scope and user that is already being generated is
        absorbed by the running pass and returns ``skipped``; the running
        pass then makes exactly one follow-up pass.
        """
        key = (scope, user_id)
        running = self._runs.get(key)
        if running is not None:
            running.mark_changed()
            logger.info("Generation for %s/%s already in progress, follow-up scheduled", scope, user_id)
            return GenerationResult(skipped=True)

        passes: List[GenerationResult] = []

        async def run():
            passes.append(await self._generate(scope, user_id))

        coalescer = RefreshCoalescer(run)
        self._runs[key] = coalescer
        try:
            await coalescer.trigger()
        finally:
            del self._runs[key]
        return GenerationResult.combine(passes)

    def note_source_change(self, scope: str):
        """A source record in ``scope`` changed; passes running there re-run once."""
        for (run_scope, _), coalescer in self._runs.items():
            if run_scope == scope:
                coalescer.mark_changed()

    async def reconcile_record(self, scope: str, user_id: str, collection: str, record_id: str) -> GenerationResult:
        """
        Re-evaluate the notifications of one sales or complaints record
        right after it was created, changed or deleted.
        """
        result = GenerationResult()
        if collection not in (subjects.SALES, subjects.COMPLAINTS):
            return result
        self.note_source_change(scope)

        try:
            record = await self._repository(scope, user_id, collection).get_by_id(record_id)
        except NotFound:
            record = None
        found = list(self._extract(collection, record)) if record is not None else []
        desired, errored = await self._classify(found, scope, user_id, result)

        notifications = self._repository(scope, user_id, NOTIFICATIONS)
        existing = {
            natural_key: notification
            for natural_key, notification in (await self._existing(notifications, result)).items()
            if _belongs(natural_key, collection, record_id)
        }
        await self._apply(notifications, user_id, existing, desired, errored, result)
        logger.info(
            "Notifications for %s %s: created=%d updated=%d deleted=%d",
            collection, record_id, result.created, result.updated, result.deleted,
        )
        return result

    async def _generate(self, scope: str, user_id: str) -> GenerationResult:
        result = GenerationResult()
        notifications = self._repository(scope, user_id, NOTIFICATIONS)

        existing = await self._existing(notifications, result)
        desired, errored = await self._candidates(scope, user_id, result)
        await self._apply(notifications, user_id, existing, desired, errored, result)

        logger.info(
            "Notifications for %s/%s: created=%d updated=%d deleted=%d collapsed=%d errors=%d",
            scope, user_id, result.created, result.updated, result.deleted,
            result.collapsed, len(result.errors),
        )
        return result

    async def cleanup_resolved(self, scope: str, user_id: str) -> int:
        """Delete notifications whose subject was resolved or no longer qualifies."""
        result = GenerationResult()
        notifications = self._repository(scope, user_id, NOTIFICATIONS)
        existing = await self._existing(notifications, result)
        desired, errored = await self._candidates(scope, user_id, result)
        await self._cleanup(notifications, user_id, existing, desired, errored, result)
        return result.deleted

    async def clear_all(self, scope: str, user_id: str) -> int:
        notifications = self._repository(scope, user_id, NOTIFICATIONS)
        docs = await notifications.load(order_by="id", direction="asc")
        targets = [
            doc.id for doc in docs
            if doc.get("userId") == user_id or doc.get("generatedFor") == user_id
        ]
        batch = await notifications.batch({"type": "delete", "id": target} for target in targets)
        batch.raise_for_failures()
        logger.info("Cleared %d notifications for %s/%s", batch.succeeded, scope, user_id)
        return batch.succeeded

    async def regenerate(self, scope: str, user_id: str) -> Dict[str, int]:
        """Full regeneration: clear everything, then generate from scratch."""
        deleted = await self.clear_all(scope, user_id)
        result = await self.generate_all(scope, user_id)
        return {"deletedCount": deleted, "createdCount": result.created}

    async def _existing(self, repo: Repository, result: GenerationResult) -> Dict[NaturalKey, Notification]:
        docs = await repo.load(order_by="createdAt", direction="asc")
        groups: Dict[NaturalKey, List[Notification]] = {}
        for doc in docs:
            try:
                notification = Notification.from_document(doc)
            except ValueError:
                logger.debug("Ignoring notification %s without a subject", doc.id)
                continue
            groups.setdefault(notification.natural_key, []).append(notification)

        existing = {}
        for natural_key, group in groups.items():
            keep, *duplicates = group
            for duplicate in duplicates:
                try:
                    await repo.remove(duplicate.id)
                    result.collapsed += 1
                except DashboardError as e:
                    result.error(natural_key.subjectType, natural_key.subjectId, e)
            if duplicates:
                logger.info("Collapsed %d duplicate notifications for %s", len(duplicates), natural_key)
            existing[natural_key] = keep
        return existing

    async def _candidates(
        self, scope: str, user_id: str, result: GenerationResult
    ) -> Tuple[Dict[NaturalKey, Candidate], Set[Tuple[str, str]]]:
        types = self.policy.subject_types
        found: List[subjects.Extracted] = []

        if SubjectType.INSTALLMENT in types or SubjectType.DELIVERY in types:
            sales = self._repository(scope, user_id, subjects.SALES)
            if SubjectType.INSTALLMENT in types:
                for sale in await sales.load({"paymentStatus": "emi"}, order_by="id", direction="asc"):
                    found.extend(subjects.installments(sale))
            if SubjectType.DELIVERY in types:
                for sale in await sales.load({"deliveryStatus": "scheduled"}, order_by="id", direction="asc"):
                    found.extend(subjects.delivery(sale))
        if SubjectType.COMPLAINT in types:
            complaints = self._repository(scope, user_id, subjects.COMPLAINTS)
            for record in await complaints.load(order_by="id", direction="asc"):
                found.extend(subjects.complaint(record))

        return await self._classify(found, scope, user_id, result)

    def _extract(self, collection: str, record: Document) -> Iterable[subjects.Extracted]:
        types = self.policy.subject_types
        if collection == subjects.SALES:
            if SubjectType.INSTALLMENT in types and record.get("paymentStatus") == "emi":
                yield from subjects.installments(record)
            if SubjectType.DELIVERY in types:
                yield from subjects.delivery(record)
        elif collection == subjects.COMPLAINTS and SubjectType.COMPLAINT in types:
            yield from subjects.complaint(record)

    async def _classify(
        self, found: List[subjects.Extracted], scope: str, user_id: str, result: GenerationResult
    ) -> Tuple[Dict[NaturalKey, Candidate], Set[Tuple[str, str]]]:
        now = self._clock()
        desired: Dict[NaturalKey, Candidate] = {}
        errored: Set[Tuple[str, str]] = set()
        employees: Dict[str, Optional[str]] = {}

        for item in found:
            try:
                subject = item.build()
                urgency = classify(subject.due, now, self._tz)
            except (DashboardError, ValueError) as e:
                logger.warning("Skipping malformed %s %s: %s", item.subject_type.value, item.subject_id, e)
                errored.add((item.subject_type.value, item.subject_id))
                result.error(item.subject_type.value, item.subject_id, e)
                continue

            if urgency.day_offset > self.policy.window(item.subject_type):
                continue
            result.count(urgency.tier)

            for recipient, for_requester in await self._recipients(
                subject, scope, user_id, employees, errored
            ):
                natural_key = NaturalKey(subject.subjectType.value, subject.subject_id, recipient, scope)
                desired[natural_key] = Candidate(subject, urgency, recipient, for_requester)

        return desired, errored

    async def _recipients(
        self,
        subject: Subject,
        scope: str,
        user_id: str,
        employees: Dict[str, Optional[str]],
        errored: Set[Tuple[str, str]],
    ) -> List[Tuple[str, bool]]:
        recipients = [(user_id, True)]
        if not (
            isinstance(subject, ComplaintSubject)
            and subject.assigneeType == subjects.EMPLOYEE_ASSIGNEE
            and subject.assignedEmployeeId
        ):
            return recipients

        employee_id = subject.assignedEmployeeId
        if employee_id not in employees:
            try:
                employee = await self._repository(scope, user_id, subjects.EMPLOYEES).get_by_id(employee_id)
                employees[employee_id] = employee.get("userId")
            except NotFound:
                logger.warning("Assigned employee %s of complaint %s not found", employee_id, subject.subject_id)
                employees[employee_id] = None
            except DashboardError as e:
                # keep whatever the employee already has until the lookup works again
                logger.warning("Could not look up employee %s: %s", employee_id, e)
                errored.add((subject.subjectType.value, subject.subject_id))
                return recipients

        employee_user = employees[employee_id]
        if employee_user and employee_user != user_id:
            recipients.append((employee_user, False))
        return recipients

    async def _apply(
        self,
        repo: Repository,
        user_id: str,
        existing: Dict[NaturalKey, Notification],
        desired: Dict[NaturalKey, Candidate],
        errored: Set[Tuple[str, str]],
        result: GenerationResult,
    ):
        await self._cleanup(repo, user_id, existing, desired, errored, result)
        for natural_key, candidate in desired.items():
            try:
                await self._upsert(repo, natural_key, candidate, existing.get(natural_key), user_id, result)
            except DashboardError as e:
                logger.warning("Could not write notification for %s/%s: %s",
                               natural_key.subjectType, natural_key.subjectId, e)
                result.error(natural_key.subjectType, natural_key.subjectId, e)

    async def _cleanup(
        self,
        repo: Repository,
        user_id: str,
        existing: Dict[NaturalKey, Notification],
        desired: Dict[NaturalKey, Candidate],
        errored: Set[Tuple[str, str]],
        result: GenerationResult,
    ):
        for natural_key, notification in list(existing.items()):
            if notification.subjectType not in self.policy.subject_types:
                continue
            if notification.userId != user_id and notification.generatedFor != user_id:
                continue
            if natural_key in desired or (natural_key.subjectType, natural_key.subjectId) in errored:
                continue
            try:
                await repo.remove(notification.id)
            except DashboardError as e:
                result.error(natural_key.subjectType, natural_key.subjectId, e)
                continue
            del existing[natural_key]
            result.deleted += 1

    async def _find(self, repo: Repository, natural_key: NaturalKey) -> Optional[Notification]:
        docs = await repo.load(
            [
                ("subjectType", natural_key.subjectType),
                ("subjectId", natural_key.subjectId),
                ("userId", natural_key.userId),
            ],
            order_by="createdAt",
            direction="asc",
            limit=1,
        )
        return Notification.from_document(docs[0]) if docs else None

    def _build(self, natural_key: NaturalKey, candidate: Candidate, user_id: str) -> Notification:
        subject, urgency = candidate.subject, candidate.urgency
        title, message, priority = subjects.describe(subject, urgency, candidate.for_requester)
        data = subject.model_dump(mode="json")
        data.update(
            isOverdue=urgency.tier is UrgencyTier.OVERDUE,
            isDueToday=urgency.tier is UrgencyTier.DUE_TODAY,
            daysOverdue=urgency.days if urgency.day_offset < 0 else 0,
        )
        return Notification(
            subjectType=subject.subjectType,
            subjectId=subject.subject_id,
            urgencyTier=urgency.tier,
            dayOffset=urgency.day_offset,
            label=urgency.label,
            title=title,
            message=message,
            priority=priority,
            category=subject.subjectType.value,
            read=False,
            userId=natural_key.userId,
            scope=natural_key.scope,
            dueDate=calendar_day(subject.due, self._tz).isoformat(),
            generatedFor=user_id,
            data=data,
        )

    async def _upsert(
        self,
        repo: Repository,
        natural_key: NaturalKey,
        candidate: Candidate,
        current: Optional[Notification],
        user_id: str,
        result: GenerationResult,
    ):
        wanted = self._build(natural_key, candidate, user_id)
        if current is None:
            current = await self._find(repo, natural_key)
        if current is None:
            await repo.add(wanted.to_fields())
            result.created += 1
            return

        stored = current.to_fields()
        fields = wanted.to_fields()
        changes = {name: fields[name] for name in TRACKED_FIELDS if stored.get(name) != fields[name]}
        if not changes:
            return
        escalated = TIER_PRECEDENCE[wanted.urgencyTier] < TIER_PRECEDENCE[current.urgencyTier]
        if escalated and current.read:
            changes["read"] = False
            changes["readAt"] = None
        await repo.update(current.id, changes)
        result.updated += 1


async def run_periodic_generation(
    generator: NotificationGenerator,
    targets: Iterable[Tuple[str, str]],
    interval: float,
):
    """Background loop regenerating notifications for fixed (scope, userId) pairs."""
    targets = list(targets)
    logger.info("Periodic generation every %.0fs for %d targets", interval, len(targets))
    while True:
        for scope, user_id in targets:
            try:
                await generator.generate_all(scope, user_id)
            except DashboardError as e:
                logger.error("Periodic generation for %s/%s failed: %s", scope, user_id, e)
        await asyncio.sleep(interval)
