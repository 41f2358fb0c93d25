from __future__ import annotations

import copy
import json
import logging
from datetime import datetime, timedelta
from pathlib import Path
from threading import Lock
from typing import Dict, List, Optional

from .event import Event, sort_key

logger = logging.getLogger(__name__)


class CalendarError(Exception):
    """The calendar file cannot be read."""


def load_events(path: Path) -> List[Event]:
    """Read events from a JSON file; a missing file is an empty calendar."""
    if not path.exists():
        return []
    try:
        with path.open("r", encoding="utf-8") as f:
            payload = json.load(f)
    except (OSError, ValueError) as exc:
        raise CalendarError(f"Failed to load calendar {path}: {exc}") from exc
    if payload is not None and not isinstance(payload, list):
        raise CalendarError(f"Calendar {path} is not a list of events")
    events: List[Event] = []
    for item in payload or []:
        try:
            events.append(Event.from_dict(item))
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("Skipping event in %s due to parse error: %s", path, exc)
    return events


def save_events(path: Path, events: List[Event]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    serializable = [e.to_dict() for e in sorted(events, key=sort_key)]
    tmp_path = path.with_name(path.name + ".tmp")
    with tmp_path.open("w", encoding="utf-8") as f:
        json.dump(serializable, f, ensure_ascii=False, indent=2)
    tmp_path.replace(path)


class AlarmCalendar:
    """JSON-file store for active events, with a second file for archived ones.

    Events handed out are copies: callers mutate them and write them back
    with :meth:`save`.
    """

    def __init__(self, path, archive_path=None, clock=None):
        self.path = Path(path)
        self.archive_path = Path(archive_path) if archive_path else None
        self._clock = clock or (lambda: datetime.now().astimezone())
        self._events: Dict[str, Event] = {}
        self._archived: Dict[str, Event] = {}
        self._lock = Lock()
        self._opened = False
        self._purge_days = -1
        self._purge_queued = False

    @property
    def is_open(self) -> bool:
        return self._opened

    def open(self) -> None:
        """Load both files. Raises CalendarError if either is unreadable."""
        events = load_events(self.path)
        archived = load_events(self.archive_path) if self.archive_path else []
        with self._lock:
            self._events = {e.id: e for e in events}
            self._archived = {e.id: e for e in archived}
            self._opened = True
        logger.info("Loaded %s events from %s", len(events), self.path)

    def load_event(self, event_id: str) -> Optional[Event]:
        with self._lock:
            event = self._events.get(event_id)
            return copy.deepcopy(event) if event is not None else None

    def events(self) -> List[Event]:
        with self._lock:
            return sorted((copy.deepcopy(e) for e in self._events.values()), key=sort_key)

    def archived_events(self) -> List[Event]:
        with self._lock:
            return [copy.deepcopy(e) for e in self._archived.values()]

    def add(self, event: Event) -> None:
        if event.created_at is None:
            event.created_at = self._clock()
        self._store(event, insert=True)
        logger.info("Event %s added for %s", event.id, event.start.isoformat())

    def save(self, event: Event) -> bool:
        """Write back a changed event. False if it has since been deleted."""
        if not self._store(event, insert=False):
            logger.info("Event %s no longer in calendar, not saved", event.id)
            return False
        logger.debug("Event %s saved", event.id)
        return True

    def _store(self, event: Event, insert: bool) -> bool:
        stored = copy.deepcopy(event)
        stored.updated = False
        stored.displaying = False
        with self._lock:
            if not insert and event.id not in self._events:
                return False
            self._events[event.id] = stored
            self._write_locked()
        return True

    def delete(self, event: Event) -> bool:
        with self._lock:
            removed = self._events.pop(event.id, None)
            if removed is not None:
                self._write_locked()
        if removed is not None:
            logger.info("Event %s deleted", event.id)
        return removed is not None

    def archive(self, event: Event) -> None:
        """Keep a copy of a consumed event for history."""
        if self.archive_path is None or self._purge_days == 0:
            return
        stored = copy.deepcopy(event)
        stored.archived_at = self._clock()
        with self._lock:
            self._archived[stored.id] = stored
            save_events(self.archive_path, list(self._archived.values()))
        logger.info("Event %s archived", event.id)
        self._purge_queued = True

    @property
    def purge_days(self) -> int:
        return self._purge_days

    def set_purge_days(self, days: int) -> None:
        """Days to keep archived events: -1 keeps them forever, 0 keeps none."""
        self._purge_days = days
        if days >= 0:
            self._purge_queued = True

    def purge_if_queued(self) -> int:
        if not self._purge_queued:
            return 0
        self._purge_queued = False
        if self._purge_days < 0:
            return 0
        return self.purge_older_than(self._purge_days)

    def purge_older_than(self, days: int) -> int:
        if self.archive_path is None:
            return 0
        cutoff = self._clock() - timedelta(days=days)
        with self._lock:
            stale = [
                event_id
                for event_id, event in self._archived.items()
                if event.archived_at is None or _aware(event.archived_at) <= _aware(cutoff)
            ]
            for event_id in stale:
                del self._archived[event_id]
            if stale:
                save_events(self.archive_path, list(self._archived.values()))
        if stale:
            logger.info("Purged %s archived events older than %s days", len(stale), days)
        return len(stale)

    def _write_locked(self) -> None:
        save_events(self.path, list(self._events.values()))


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.astimezone()
