from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

from alarms.dispatch_loop import EventFunction
from alarms.parser import UsageError
from alarms.request_router import RequestRouter, format_alarm_time

from conftest import NOW, make_event


def test_daemon_notification_handles_event(manager, calendar, output):
    calendar.add(make_event(-1, text="From daemon", id="al_daemon"))
    result = RequestRouter(manager).handle_trigger(EventFunction.HANDLE, "ad:al_daemon")
    assert result.handled
    assert result.from_daemon
    assert result.event_id == "al_daemon"
    assert result.response_text == "Event al_daemon handled"
    assert "From daemon" in output.getvalue()


def test_trigger_unknown_event(manager):
    result = RequestRouter(manager).handle_trigger(EventFunction.TRIGGER, "al_nope")
    assert not result.handled
    assert result.response_text == "Event al_nope not found"


def test_cancel_event(manager, calendar):
    calendar.add(make_event(30, id="al_drop"))
    result = RequestRouter(manager).handle_trigger(EventFunction.CANCEL, "al_drop")
    assert result.response_text == "Event al_drop cancelled"
    assert calendar.load_event("al_drop") is None


def test_new_alarm_scheduled(manager, calendar):
    args = SimpleNamespace(message=["Call mum"], time="2025-01-01-09:30")
    result = RequestRouter(manager).handle_new_alarm(args, now=NOW)
    assert result.handled
    assert result.response_text == "Alarm scheduled for today 09:30"
    [event] = calendar.events()
    assert event.text == "Call mum"


def test_new_alarm_uses_default_colours(manager, calendar):
    router = RequestRouter(manager, default_bg="#000080", default_fg="#ffffff")
    router.handle_new_alarm(SimpleNamespace(message=["Night"], time="2025-01-02-23:00"), now=NOW)
    [event] = calendar.events()
    assert event.bg_color == "#000080"
    assert event.fg_color == "#ffffff"


def test_new_alarm_usage_error_propagates(manager):
    with pytest.raises(UsageError):
        RequestRouter(manager).handle_new_alarm(SimpleNamespace(message=[], time="07:00"), now=NOW)


def test_format_alarm_time():
    now = datetime(2025, 1, 1, 6, 0, tzinfo=timezone.utc)
    assert format_alarm_time(now + timedelta(hours=1), now) == "today 07:00"
    assert format_alarm_time(now + timedelta(days=1), now) == "tomorrow 06:00"
    assert format_alarm_time(now + timedelta(days=2), now) == "the day after tomorrow 06:00"
    assert format_alarm_time(now + timedelta(days=10), now) == "11.01 06:00"
