"""Lateness windows, due checks and occurrence advancement.

Times are either timezone-aware, or naive, in which case they are local clock
times which float with the system time zone.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from .recurrence import Recurrence, Repetition, elapsed_between

# Leeway added to the daemon's check interval to cater for timing irregularities.
LATENESS_LEEWAY = 5
DEFAULT_CHECK_INTERVAL = 60
MINUTES_PER_DAY = 1440


class OccurKind(Enum):
    NONE = "none"
    FIRST_OR_ONLY = "first_or_only"
    RECURRENCE_DATE = "recurrence_date"
    RECURRENCE_DATE_TIME = "recurrence_date_time"
    LAST_RECURRENCE = "last_recurrence"


@dataclass(frozen=True)
class Occurrence:
    kind: OccurKind
    when: Optional[datetime] = None
    # True when this is a simple repetition of the recurrence at `base`.
    repeat: bool = False
    base: Optional[datetime] = None

    def __bool__(self) -> bool:
        return self.kind is not OccurKind.NONE


NO_OCCURRENCE = Occurrence(OccurKind.NONE)


def max_lateness(late_cancel: int, check_interval: int = DEFAULT_CHECK_INTERVAL) -> int:
    """Seconds an alarm may be overdue before it counts as too late."""
    extra = (late_cancel - 1) * 60 if late_cancel >= 1 else 0
    return check_interval + LATENESS_LEEWAY + extra


def clock_time(now: datetime) -> datetime:
    """``now`` expressed as a naive local clock time."""
    if now.tzinfo is None:
        return now
    return now.astimezone().replace(tzinfo=None)


def align(now: datetime, like: datetime) -> datetime:
    """Express ``now`` so that it compares with ``like``."""
    if like.tzinfo is None:
        return clock_time(now)
    if now.tzinfo is None:
        return now.astimezone()
    return now


def secs_to(when: datetime, now: datetime) -> int:
    """Seconds from ``when`` until ``now``; negative while ``when`` is in the future."""
    return int(elapsed_between(when, align(now, when)).total_seconds())


def is_due(when: datetime, now: datetime) -> bool:
    if when.tzinfo is not None:
        return when <= align(now, when)
    # A clock time may look future because it falls in a daylight saving gap,
    # yet have passed once `now` is read off the local clock.
    if when.astimezone() <= align(now, when.astimezone()):
        return True
    return when <= clock_time(now)


def date_only_limit(when: datetime, late_cancel: int) -> datetime:
    """First moment at which a date-only alarm is too late to show."""
    return when + timedelta(days=late_cancel // MINUTES_PER_DAY + 1)


def _classify(recurrence: Recurrence, when: datetime, date_only: bool) -> OccurKind:
    if when == recurrence.first():
        return OccurKind.FIRST_OR_ONLY
    if recurrence.is_last(when):
        return OccurKind.LAST_RECURRENCE
    return OccurKind.RECURRENCE_DATE if date_only else OccurKind.RECURRENCE_DATE_TIME


def previous_occurrence(
    start: datetime,
    recurrence: Optional[Recurrence],
    repetition: Repetition,
    before: datetime,
    date_only: bool = False,
    include_repetitions: bool = True,
) -> Occurrence:
    """Most recent occurrence strictly earlier than ``before``."""
    before = align(before, start)
    if recurrence is None:
        if start >= before:
            return NO_OCCURRENCE
        base, kind = start, OccurKind.FIRST_OR_ONLY
    else:
        base = recurrence.before(before)
        if base is None:
            return NO_OCCURRENCE
        kind = _classify(recurrence, base, date_only)
    if include_repetitions and repetition:
        index = repetition.latest(base, before)
        if index > 0:
            return Occurrence(kind, repetition.at(base, index), repeat=True, base=base)
    return Occurrence(kind, base, base=base)


def next_occurrence(
    start: datetime,
    recurrence: Optional[Recurrence],
    repetition: Repetition,
    after: datetime,
    date_only: bool = False,
    include_repetitions: bool = False,
) -> Occurrence:
    """Earliest occurrence strictly later than ``after``."""
    after = align(after, start)
    if recurrence is None:
        following = start if start > after else None
    else:
        following = recurrence.after(after)
    if include_repetitions and repetition:
        if recurrence is None:
            current = start if start <= after else None
        else:
            current = recurrence.before(after, inclusive=True)
        if current is not None:
            repeat = repetition.next_after(current, after)
            if repeat is not None and (following is None or repeat < following):
                kind = OccurKind.FIRST_OR_ONLY if recurrence is None else _classify(recurrence, current, date_only)
                return Occurrence(kind, repeat, repeat=True, base=current)
    if following is None:
        return NO_OCCURRENCE
    if recurrence is None:
        return Occurrence(OccurKind.FIRST_OR_ONLY, following, base=following)
    return Occurrence(_classify(recurrence, following, date_only), following, base=following)
