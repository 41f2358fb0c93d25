from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import List, Optional

from .event import AlarmInstance, AlarmRole, Event
from .timing import (
    DEFAULT_CHECK_INTERVAL,
    OccurKind,
    Occurrence,
    align,
    date_only_limit,
    is_due,
    max_lateness,
    secs_to,
)

logger = logging.getLogger(__name__)


class Verdict(Enum):
    RESCHEDULE = "reschedule"
    CANCEL = "cancel"


@dataclass(frozen=True)
class InstanceAction:
    verdict: Verdict
    instance: AlarmInstance


@dataclass
class Evaluation:
    due: Optional[AlarmInstance] = None
    actions: List[InstanceAction] = field(default_factory=list)


class TriggerEvaluator:
    """Decides which alarm instance of an event is due, and which are too late.

    At most one instance is selected per pass; overdue instances of a
    late-cancel event are returned as reschedule or cancel actions instead.
    """

    def __init__(self, check_interval: int = DEFAULT_CHECK_INTERVAL):
        self.check_interval = check_interval

    def max_lateness(self, late_cancel: int) -> int:
        return max_lateness(late_cancel, self.check_interval)

    def evaluate(self, event: Event, now: datetime) -> Evaluation:
        result = Evaluation()
        repeat_dt: Optional[datetime] = None
        for instance in event.instances():
            if instance.deferred and event.repetition and repeat_dt is not None and instance.when > repeat_dt:
                # A deferral beyond the latest repetition supersedes the main alarm,
                # whether or not the deferral is due yet.
                result.due = None
            if not is_due(instance.when, now):
                logger.debug("Event %s alarm %s: not due", event.id, instance.role.value)
                continue
            secs = secs_to(instance.when, now)
            if instance.repeat_at_login:
                # A login alarm is registered with a past time, so ignore
                # notifications arriving straight after it was set up.
                if secs < self.max_lateness(1):
                    continue
                if result.due is not None:
                    continue
                instance = instance.at(now)
                secs = 0
            if event.repetition and instance.role is AlarmRole.MAIN:
                # The stored time stays at the recurrence until its repetitions finish.
                occurrence = event.previous_occurrence(now + timedelta(seconds=1), include_repetitions=True)
                if occurrence:
                    repeat_dt = occurrence.when
                    if occurrence.repeat:
                        instance = instance.at(occurrence.when)
                        secs = secs_to(occurrence.when, now)
                if event.last_triggered is not None and instance.when <= event.last_triggered:
                    logger.debug("Event %s alarm %s: already triggered", event.id, instance.role.value)
                    continue
            if event.late_cancel:
                verdict = self._late_verdict(event, instance, secs, now)
                if verdict is not None:
                    logger.debug("Event %s alarm %s: too late, %s", event.id, instance.role.value, verdict.value)
                    result.actions.append(InstanceAction(verdict, instance))
                    continue
            if result.due is None:
                logger.debug("Event %s alarm %s: execute", event.id, instance.role.value)
                result.due = instance
            else:
                logger.debug("Event %s alarm %s: skip", event.id, instance.role.value)
        return result

    def _late_verdict(self, event: Event, instance: AlarmInstance, secs: int, now: datetime) -> Optional[Verdict]:
        if instance.date_only:
            # No time of day, so measure lateness in whole days.
            if align(now, instance.when) < date_only_limit(instance.when, event.late_cancel):
                return None
            occurrence = event.previous_occurrence(now, include_repetitions=True)
            if not occurrence:
                return Verdict.RESCHEDULE
            if align(now, occurrence.when) < date_only_limit(occurrence.when, event.late_cancel):
                return None
            return self._final_verdict(event, occurrence)

        max_late = self.max_lateness(event.late_cancel)
        if secs <= max_late:
            return None
        occurrence = event.previous_occurrence(now, include_repetitions=True)
        if not occurrence:
            return Verdict.RESCHEDULE
        if secs_to(occurrence.when, now) <= max_late:
            return None
        return self._final_verdict(event, occurrence)

    @staticmethod
    def _final_verdict(event: Event, occurrence: Occurrence) -> Verdict:
        if occurrence.repeat:
            return Verdict.RESCHEDULE
        if occurrence.kind is OccurKind.LAST_RECURRENCE:
            return Verdict.CANCEL
        if occurrence.kind is OccurKind.FIRST_OR_ONLY and not event.recurs:
            return Verdict.CANCEL
        return Verdict.RESCHEDULE
