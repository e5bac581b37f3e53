# dashcore/services/urgency.py
"""Urgency classification of due dates against the current calendar day."""
from dataclasses import dataclass
from datetime import date, datetime, timezone, tzinfo
from typing import Any, Callable, Iterable, List, Optional, TypeVar
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dashcore.errors import ValidationError
from dashcore.models.notification import UrgencyTier

T = TypeVar("T")

TIER_PRECEDENCE = {
    UrgencyTier.OVERDUE: 0,
    UrgencyTier.DUE_TODAY: 1,
    UrgencyTier.UPCOMING: 2,
}


@dataclass(frozen=True)
class Urgency:
    tier: UrgencyTier
    day_offset: int   # due day minus reference day; negative when overdue
    label: str

    @property
    def days(self) -> int:
        return abs(self.day_offset)

    @property
    def sort_key(self) -> tuple:
        return urgency_sort_key(self.tier, self.day_offset)


def urgency_sort_key(tier: UrgencyTier, day_offset: int) -> tuple:
    return (TIER_PRECEDENCE[UrgencyTier(tier)], day_offset)


def get_timezone(name: Optional[str]) -> tzinfo:
    if not name or name.upper() == "UTC":
        return timezone.utc
    try:
        return ZoneInfo(name)
    except ZoneInfoNotFoundError:
        raise ValidationError(f"Unknown timezone: {name}")


def calendar_day(value: Any, tz: tzinfo = timezone.utc) -> date:
    """
    Truncate an instant to its calendar day in ``tz``. Accepts dates,
    datetimes (naive ones are taken as local to ``tz``), ISO-8601 strings
    and epoch milliseconds.
    """
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.date()
        return value.astimezone(tz).date()
    if isinstance(value, date):
        return value
    if isinstance(value, bool):
        raise ValidationError(f"Not a date: {value!r}")
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc).astimezone(tz).date()
    if isinstance(value, str) and value.strip():
        text = value.strip()
        try:
            if len(text) == 10:
                return date.fromisoformat(text)
            return calendar_day(datetime.fromisoformat(text), tz)
        except ValueError:
            raise ValidationError(f"Not an ISO-8601 date: {value!r}")
    raise ValidationError(f"Not a date: {value!r}")


def label_for(day_offset: int) -> str:
    if day_offset < 0:
        days = -day_offset
        return f"{days} day overdue" if days == 1 else f"{days} days overdue"
    if day_offset == 0:
        return "Due today"
    if day_offset == 1:
        return "Tomorrow"
    return f"In {day_offset} days"


def classify(due: Any, reference: Any, tz: tzinfo = timezone.utc) -> Urgency:
    day_offset = (calendar_day(due, tz) - calendar_day(reference, tz)).days
    if day_offset < 0:
        tier = UrgencyTier.OVERDUE
    elif day_offset == 0:
        tier = UrgencyTier.DUE_TODAY
    else:
        tier = UrgencyTier.UPCOMING
    return Urgency(tier=tier, day_offset=day_offset, label=label_for(day_offset))


def sort_by_urgency(items: Iterable[T], key: Callable[[T], Urgency] = lambda item: item) -> List[T]:
    """Overdue first, then due today, then upcoming; most urgent first inside a tier."""
    return sorted(items, key=lambda item: key(item).sort_key)
