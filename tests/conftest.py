import io
from datetime import datetime, timedelta, timezone
from typing import List

import pytest

from alarms.display import ConsoleDisplay
from alarms.event import Event, MessageAction, new_event_id
from alarms.manager import AlarmManager
from alarms.storage import AlarmCalendar

NOW = datetime(2025, 1, 1, 6, 0, tzinfo=timezone.utc)


class FakeMailer:
    def __init__(self, sent: bool = True, errors: List[str] = None):
        self.sent = sent
        self.errors = list(errors or [])
        self.calls = []

    def send(self, event, errors, allow_notify=True):
        self.calls.append((event.id, allow_notify))
        errors.extend(self.errors)
        return self.sent


def make_event(minutes_from_now: int = -10, text: str = "Wake up", **kwargs) -> Event:
    return Event(
        id=kwargs.pop("id", new_event_id()),
        start=NOW + timedelta(minutes=minutes_from_now),
        action=kwargs.pop("action", MessageAction(text)),
        **kwargs,
    )


@pytest.fixture
def output():
    return io.StringIO()


@pytest.fixture
def display(output):
    return ConsoleDisplay(output)


@pytest.fixture
def calendar(tmp_path):
    return AlarmCalendar(tmp_path / "calendar.json", tmp_path / "archive.json", clock=lambda: NOW)


@pytest.fixture
def mailer():
    return FakeMailer()


@pytest.fixture
def manager(calendar, display, mailer, tmp_path):
    engine = AlarmManager(
        calendar,
        display,
        mailer,
        shell="/bin/sh",
        timezone=timezone.utc,
        clock=lambda: NOW,
        temp_dir=str(tmp_path),
    )
    assert engine.init_check()
    return engine
