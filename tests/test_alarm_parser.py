from datetime import datetime, timezone
from types import SimpleNamespace

import pytest

from alarms.event import CommandAction, EmailAction, MessageAction
from alarms.parser import (
    UsageError,
    build_new_alarm_request,
    parse_color,
    parse_interval,
    parse_wake_time,
)
from alarms.recurrence import RecurType


def _now() -> datetime:
    return datetime(2025, 1, 1, 6, 0, tzinfo=timezone.utc)


def _build(**options):
    return build_new_alarm_request(SimpleNamespace(**options), now=_now(), tz=timezone.utc)


def test_parse_time_later_today():
    result = parse_wake_time("7:30", timezone.utc, now=_now())
    assert result.when == datetime(2025, 1, 1, 7, 30, tzinfo=timezone.utc)
    assert not result.date_only


def test_parse_time_already_passed_means_tomorrow():
    result = parse_wake_time("5:30", timezone.utc, now=_now())
    assert result.when == datetime(2025, 1, 2, 5, 30, tzinfo=timezone.utc)


def test_parse_full_date_and_time():
    result = parse_wake_time("2025-12-25-07:00", timezone.utc, now=_now())
    assert result.when == datetime(2025, 12, 25, 7, 0, tzinfo=timezone.utc)


def test_parse_date_only():
    result = parse_wake_time("2025-03-04", timezone.utc, now=_now())
    assert result.date_only
    assert result.when.date().isoformat() == "2025-03-04"


def test_parse_clock_time_is_naive():
    result = parse_wake_time("2025-06-01-12:00 Clock", timezone.utc, now=_now())
    assert result.when.tzinfo is None


@pytest.mark.parametrize("text", ["25:00", "12:60", "2025-13-01-07:00", "tomorrow", "2025-02-30"])
def test_parse_invalid_time(text):
    with pytest.raises(ValueError):
        parse_wake_time(text, timezone.utc, now=_now())


def test_parse_interval_forms():
    assert parse_interval("90") == (RecurType.MINUTELY, 90)
    assert parse_interval("1H30M") == (RecurType.MINUTELY, 90)
    assert parse_interval("2D") == (RecurType.DAILY, 2)
    assert parse_interval("3W") == (RecurType.WEEKLY, 3)
    assert parse_interval("3M") == (RecurType.MONTHLY_DAY, 3)
    assert parse_interval("1Y") == (RecurType.ANNUAL_DATE, 1)
    assert parse_interval("-15") == (RecurType.MINUTELY, -15)


def test_parse_interval_rejects_months_when_not_allowed():
    with pytest.raises(ValueError):
        parse_interval("3M", allow_month_year=False)
    with pytest.raises(ValueError):
        parse_interval("abc")


def test_parse_color():
    assert parse_color("0xFF0000") == "#ff0000"
    assert parse_color("red") == "#ff0000"
    assert parse_color("#abc") == "#aabbcc"
    with pytest.raises(ValueError):
        parse_color("nocolour")


def test_message_alarm_defaults_to_now():
    request = _build(message=["Hello"])
    assert request.action == MessageAction("Hello")
    assert request.when == _now()
    assert request.enabled


def test_exec_joins_arguments():
    request = _build(exec_command="notify-send", message=["Coffee", "time"])
    assert request.action == CommandAction(command="notify-send Coffee time", script=False)


def test_email_alarm():
    request = _build(mail=["a@example.com"], subject="Report", message=["Body text"], bcc=True)
    assert isinstance(request.action, EmailAction)
    assert request.action.addresses == ("a@example.com",)
    assert request.action.body == "Body text"
    assert request.action.bcc


@pytest.mark.parametrize(
    "options, message",
    [
        ({"file": "/tmp/x", "exec_command": "ls"}, "--exec incompatible with --file"),
        ({"message": ["x"], "subject": "s"}, "--subject requires --mail"),
        ({"message": ["x"], "repeat": "3"}, "--repeat requires --interval"),
        ({"message": ["x"], "until": "08:00"}, "--until requires --interval"),
        ({"message": ["x"], "auto_close": True}, "--auto-close requires --late-cancel"),
        ({"message": ["x"], "beep": True, "speak": True}, "--beep incompatible with --speak"),
        ({"message": ["x"], "volume": "50"}, "--volume requires --play or --play-repeat"),
        ({"mail": ["not-an-address"]}, "--mail: invalid email address"),
        ({}, "No message, file, command or email specified"),
        ({"message": ["x"], "time": "99:99"}, "Invalid --time parameter"),
        ({"message": ["x"], "login": True, "interval": "10"}, "--login incompatible with --interval"),
    ],
)
def test_invalid_combinations(options, message):
    with pytest.raises(UsageError) as excinfo:
        _build(**options)
    assert str(excinfo.value) == message


def test_interval_with_repeat_count():
    request = _build(message=["x"], time="07:00", interval="10", repeat="3")
    assert request.recurrence is not None
    assert "FREQ=MINUTELY" in request.recurrence.rule
    assert "INTERVAL=10" in request.recurrence.rule
    assert "COUNT=3" in request.recurrence.rule
    assert request.repeat_count == 0


def test_interval_until_date_only_end_covers_whole_day():
    request = _build(message=["x"], time="2025-01-01-07:00", interval="1H0M", until="2025-01-02")
    assert "UNTIL=20250102T235959Z" in request.recurrence.rule


def test_until_earlier_than_time():
    with pytest.raises(UsageError) as excinfo:
        _build(message=["x"], time="2025-01-01-09:00", interval="10", until="2025-01-01-08:00")
    assert str(excinfo.value) == "--until earlier than --time"


def test_recurrence_with_sub_repetition():
    request = _build(message=["x"], time="07:00", recurrence="FREQ=DAILY", interval="30", repeat="4")
    assert request.recurrence.rule == "FREQ=DAILY"
    assert request.repeat_interval == 30
    assert request.repeat_count == 4


def test_repetition_longer_than_recurrence():
    with pytest.raises(UsageError):
        _build(message=["x"], time="07:00", recurrence="FREQ=HOURLY", interval="30", repeat="4")


def test_reminder_minutes():
    assert _build(message=["x"], reminder="90").reminder_minutes == 90
    assert _build(message=["x"], reminder_once="2D").reminder_minutes == -2880


def test_reminder_not_allowed_for_commands():
    with pytest.raises(UsageError) as excinfo:
        _build(exec_command="ls", reminder="10")
    assert str(excinfo.value) == "--reminder incompatible with --exec"


def test_late_cancel_in_days_is_minutes():
    request = _build(message=["x"], late_cancel="1D", auto_close=True)
    assert request.late_cancel == 1440
    assert request.auto_close


def test_play_volume_and_colours():
    request = _build(message=["x"], play_repeat="bell.ogg", volume="50", color="yellow", colorfg="0x000080")
    assert request.audio_file == "bell.ogg"
    assert request.repeat_sound
    assert request.audio_volume == 0.5
    assert request.bg_color == "#ffff00"
    assert request.fg_color == "#000080"


def test_date_only_alarm_rejects_minute_interval():
    with pytest.raises(UsageError) as excinfo:
        _build(message=["x"], time="2025-03-04", interval="30")
    assert str(excinfo.value) == "Invalid --interval parameter for date-only alarm"
