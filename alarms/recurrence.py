from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import List, Optional

from dateutil.rrule import rrulestr

# Number of occurrences sampled when measuring the longest gap of a rule.
_INTERVAL_SAMPLE = 60


class RecurType(Enum):
    MINUTELY = "MINUTELY"
    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    MONTHLY_DAY = "MONTHLY"
    ANNUAL_DATE = "YEARLY"


@dataclass
class Recurrence:
    """An RFC 5545 RRULE anchored at the event's first occurrence."""

    rule: str
    dtstart: datetime

    def __post_init__(self) -> None:
        if self.rule.upper().startswith("RRULE:"):
            self.rule = self.rule[6:]
        # Fail early on malformed rules.
        self._rrule()

    @classmethod
    def simple(
        cls,
        recur_type: RecurType,
        interval: int,
        count: int,
        start: datetime,
        end: Optional[datetime] = None,
    ) -> "Recurrence":
        """Build a plain FREQ/INTERVAL rule.

        ``count`` > 0 limits the number of occurrences, 0 runs until ``end``
        and -1 recurs forever.
        """
        parts = [f"FREQ={recur_type.value}", f"INTERVAL={max(1, interval)}"]
        if count > 0:
            parts.append(f"COUNT={count}")
        elif count == 0 and end is not None:
            parts.append(f"UNTIL={_format_until(end)}")
        return cls(rule=";".join(parts), dtstart=start)

    def _rrule(self):
        return rrulestr(self.rule, dtstart=self.dtstart)

    def first(self) -> Optional[datetime]:
        return self._rrule().after(self.dtstart, inc=True)

    def after(self, dt: datetime, inclusive: bool = False) -> Optional[datetime]:
        return self._rrule().after(dt, inc=inclusive)

    def before(self, dt: datetime, inclusive: bool = False) -> Optional[datetime]:
        return self._rrule().before(dt, inc=inclusive)

    def is_last(self, dt: datetime) -> bool:
        return self.after(dt) is None

    def sample(self, limit: int = _INTERVAL_SAMPLE) -> List[datetime]:
        occurrences: List[datetime] = []
        for occurrence in self._rrule():
            occurrences.append(occurrence)
            if len(occurrences) >= limit:
                break
        return occurrences

    def longest_interval(self) -> int:
        """Longest gap between consecutive occurrences, in minutes."""
        occurrences = self.sample()
        if len(occurrences) < 2:
            return 0
        gaps = (b - a for a, b in zip(occurrences, occurrences[1:]))
        return int(max(gaps) / timedelta(minutes=1))

    def to_dict(self) -> dict:
        return {"rule": self.rule, "dtstart": self.dtstart.isoformat()}

    @classmethod
    def from_dict(cls, data: dict) -> "Recurrence":
        return cls(rule=str(data["rule"]), dtstart=datetime.fromisoformat(data["dtstart"]))


def _format_until(end: datetime) -> str:
    if end.tzinfo is None:
        return end.strftime("%Y%m%dT%H%M%S")
    return end.astimezone(timezone.utc).strftime("%Y%m%dT%H%M%SZ")


@dataclass
class Repetition:
    """A fixed interval/count layered on each recurrence of the main alarm."""

    interval: int = 0  # minutes
    count: int = 0  # repeats after each occurrence, excluding the occurrence itself

    def __bool__(self) -> bool:
        return self.interval > 0 and self.count > 0

    @property
    def step(self) -> timedelta:
        return timedelta(minutes=self.interval)

    def at(self, base: datetime, index: int) -> datetime:
        return shift(base, self.step * index)

    def end(self, base: datetime) -> datetime:
        return self.at(base, self.count if self else 0)

    def latest(self, base: datetime, limit: datetime, inclusive: bool = False) -> int:
        """Index of the latest repeat of ``base`` earlier than ``limit``."""
        if not self:
            return 0
        elapsed = elapsed_between(base, limit)
        index = int(elapsed // self.step)
        if not inclusive and index > 0 and self.at(base, index) >= limit:
            index -= 1
        return max(0, min(self.count, index))

    def next_after(self, base: datetime, after: datetime) -> Optional[datetime]:
        if not self:
            return None
        index = self.latest(base, after, inclusive=True) + 1
        if elapsed_between(base, after) < timedelta(0):
            index = 0
        if index > self.count:
            return None
        return self.at(base, index)

    def to_dict(self) -> dict:
        return {"interval": self.interval, "count": self.count}

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "Repetition":
        if not data:
            return cls()
        return cls(interval=int(data.get("interval", 0)), count=int(data.get("count", 0)))


def shift(base: datetime, delta: timedelta) -> datetime:
    """Add an absolute duration, ignoring wall-clock shifts for aware times."""
    if base.tzinfo is None:
        return base + delta
    return (base.astimezone(timezone.utc) + delta).astimezone(base.tzinfo)


def elapsed_between(start: datetime, end: datetime) -> timedelta:
    if start.tzinfo is None or end.tzinfo is None:
        return end.replace(tzinfo=None) - start.replace(tzinfo=None)
    return end.astimezone(timezone.utc) - start.astimezone(timezone.utc)
