from __future__ import annotations

import logging
from datetime import datetime, timedelta
from threading import Event, Lock, Thread
from typing import Callable, List, Optional, Set, Tuple

from .event import AlarmRole
from .event import Event as AlarmEvent
from .timing import DEFAULT_CHECK_INTERVAL, is_due

logger = logging.getLogger(__name__)

NotificationKey = Tuple[str, AlarmRole, datetime]


class AlarmDaemon:
    """In-process notifier which polls the calendar for due alarms.

    Each due alarm instance is notified once. ``notify`` is called from the
    daemon's thread with the event id.
    """

    def __init__(
        self,
        calendar,
        notify: Callable[[str], None],
        check_interval: int = DEFAULT_CHECK_INTERVAL,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.calendar = calendar
        self.notify = notify
        self.check_interval = max(1, check_interval)
        self._clock = clock or (lambda: datetime.now().astimezone())
        self._notified: Set[NotificationKey] = set()
        self._lock = Lock()
        self._stop_event = Event()
        self._wakeup = Event()
        self._thread: Optional[Thread] = None
        self._reset_queued = False

    @property
    def running(self) -> bool:
        return self._thread is not None

    def max_time_since_check(self) -> int:
        """Longest time, in seconds, between a due time and its notification."""
        return self.check_interval

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop_event.clear()
        self._thread = Thread(target=self._loop, name="alarm-daemon", daemon=True)
        self._thread.start()
        logger.info("Alarm daemon started (check interval %ss)", self.check_interval)

    def stop(self) -> None:
        self._stop_event.set()
        self._wakeup.set()
        if self._thread:
            self._thread.join(timeout=2)
        self._thread = None

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.check()
            except Exception:
                logger.error("Alarm daemon check failed", exc_info=True)
            self._wakeup.wait(self.check_interval)
            self._wakeup.clear()

    def check(self) -> List[str]:
        """Notify every event with a newly due alarm. Returns their ids.

        Only instances which are still due are remembered, so an event's old
        occurrences are forgotten once it has moved on.
        """
        now = self._clock()
        due = [(event.id, self._due_keys(event, now)) for event in self.calendar.events()]
        with self._lock:
            previous = self._notified
            self._notified = {key for _, keys in due for key in keys}
        notified: List[str] = []
        for event_id, keys in due:
            fresh = [key for key in keys if key not in previous]
            if not fresh:
                continue
            logger.debug("Event %s due: %s", event_id, ", ".join(key[1].value for key in fresh))
            notified.append(event_id)
            try:
                self.notify(event_id)
            except Exception:
                logger.error("Alarm notification failed for event %s", event_id, exc_info=True)
        return notified

    @staticmethod
    def _due_keys(event: AlarmEvent, now: datetime) -> List[NotificationKey]:
        keys: List[NotificationKey] = []
        for instance in event.instances():
            when = instance.when
            if instance.role is AlarmRole.MAIN and event.repetition:
                occurrence = event.previous_occurrence(now + timedelta(seconds=1), include_repetitions=True)
                if occurrence and occurrence.repeat:
                    when = occurrence.when
            if is_due(when, now):
                keys.append((event.id, instance.role, when))
        return keys

    def event_handled(self, event_id: str) -> None:
        """The engine has dealt with ``event_id``; forget it if it is gone."""
        logger.debug("Event %s handled", event_id)
        if self.calendar.load_event(event_id) is None:
            self._forget(lambda key: key[0] == event_id)

    def queue_reset(self) -> None:
        self._reset_queued = True

    def reset_if_queued(self) -> bool:
        if not self._reset_queued:
            return False
        self._reset_queued = False
        self.reset()
        return True

    def reset(self) -> None:
        """Drop notifications for events no longer in the calendar and recheck soon."""
        live = {event.id for event in self.calendar.events()}
        self._forget(lambda key: key[0] not in live)
        self._wakeup.set()
        logger.info("Alarm daemon reset")

    def _forget(self, predicate: Callable[[NotificationKey], bool]) -> None:
        with self._lock:
            self._notified = {key for key in self._notified if not predicate(key)}
