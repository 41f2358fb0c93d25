from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, tzinfo
from typing import List, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .event import Action, CommandAction, EmailAction, FileAction, MessageAction
from .recurrence import RecurType, Recurrence
from .timing import MINUTES_PER_DAY

CLOCK_ZONE = "clock"

NAMED_COLORS = {
    "black": "#000000",
    "white": "#ffffff",
    "red": "#ff0000",
    "green": "#008000",
    "blue": "#0000ff",
    "yellow": "#ffff00",
    "cyan": "#00ffff",
    "magenta": "#ff00ff",
    "orange": "#ffa500",
    "gray": "#808080",
    "grey": "#808080",
    "darkred": "#8b0000",
    "darkgreen": "#006400",
    "darkblue": "#00008b",
    "lightgray": "#d3d3d3",
    "lightgrey": "#d3d3d3",
}

_TIME_RE = re.compile(r"(?:(?:(?:(\d+)-)?(\d+)-)?(\d+)-)?(\d+):(\d+)")
_DATE_RE = re.compile(r"(\d+)-(\d+)-(\d+)")
_EMAIL_RE = re.compile(r"[^@\s]+@[^@\s]+")
_HEX_RE = re.compile(r"#(?:[0-9a-fA-F]{3}|[0-9a-fA-F]{6})")


class UsageError(ValueError):
    """Malformed or inconsistent alarm request parameters."""


@dataclass(frozen=True)
class WakeTime:
    when: datetime
    date_only: bool = False


@dataclass
class NewAlarmRequest:
    action: Action
    when: datetime
    date_only: bool = False
    late_cancel: int = 0
    auto_close: bool = False
    confirm_ack: bool = False
    beep: bool = False
    speak: bool = False
    repeat_sound: bool = False
    repeat_at_login: bool = False
    copy_to_organizer: bool = False
    enabled: bool = True
    bg_color: str = "#ffffff"
    fg_color: str = "#000000"
    audio_file: str = ""
    audio_volume: float = -1.0
    # Negative for a reminder shown before the first recurrence only.
    reminder_minutes: int = 0
    recurrence: Optional[Recurrence] = None
    repeat_interval: int = 0
    # Total number of firings of each recurrence, including the first.
    repeat_count: int = 0


def resolve_zone(name: Optional[str], default: Optional[tzinfo] = None) -> Optional[tzinfo]:
    """Zone for a time parameter; None means floating local clock time."""
    if not name:
        return default or datetime.now().astimezone().tzinfo
    if name.lower() == CLOCK_ZONE:
        return None
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValueError(f"Unknown time zone: {name}") from exc


def parse_wake_time(
    text: str,
    tz: Optional[tzinfo] = None,
    default: Optional[datetime] = None,
    now: Optional[datetime] = None,
) -> WakeTime:
    """Parse ``[[[yyyy-]mm-]dd-]hh:mm [zone]`` or ``yyyy-mm-dd [zone]``.

    Date parts which are omitted are taken from ``default``, or else from the
    current date, in which case a bare time earlier than now means tomorrow.
    """
    value, _, zone_name = text.strip().partition(" ")
    zone = resolve_zone(zone_name.strip(), tz)

    match = _TIME_RE.fullmatch(value)
    if match is None:
        match = _DATE_RE.fullmatch(value)
        if match is None:
            raise ValueError(f"Invalid date/time: {text}")
        year, month, day = (int(part) for part in match.groups())
        try:
            day_value = date(year, month, day)
        except ValueError as exc:
            raise ValueError(f"Invalid date: {text}") from exc
        return WakeTime(datetime.combine(day_value, time(0, 0), tzinfo=zone), date_only=True)

    year, month, day, hour, minute = (int(part) if part is not None else None for part in match.groups())
    if hour >= 24 or minute >= 60:
        raise ValueError(f"Invalid time: {text}")
    if day is not None and not 1 <= day <= 31:
        raise ValueError(f"Invalid day: {text}")
    if month is not None and not 1 <= month <= 12:
        raise ValueError(f"Invalid month: {text}")
    wake = time(hour, minute)

    if year is None:
        if default is not None:
            reference = default.date()
            year = reference.year
        else:
            current = _now_in(zone, now)
            reference = current.date()
            year = reference.year
        month = month if month is not None else reference.month
        day = day if day is not None else reference.day
    try:
        day_value = date(year, month, day)
    except ValueError as exc:
        raise ValueError(f"Invalid date: {text}") from exc
    if default is None and match.group(3) is None and wake < _now_in(zone, now).time():
        day_value += timedelta(days=1)
    return WakeTime(datetime.combine(day_value, wake, tzinfo=zone))


def _now_in(zone: Optional[tzinfo], now: Optional[datetime]) -> datetime:
    now = now or datetime.now().astimezone()
    if now.tzinfo is None:
        now = now.astimezone()
    if zone is None:
        return now.astimezone().replace(tzinfo=None)
    return now.astimezone(zone)


def parse_interval(text: str, allow_month_year: bool = True) -> Tuple[RecurType, int]:
    """Parse ``nnn`` minutes, ``nHnnM``, ``nD``, ``nW``, ``nM`` or ``nY``."""
    value = text.strip()
    negative = value.startswith("-")
    if negative:
        value = value[1:]
    if not value:
        raise ValueError("Empty interval")
    interval = 0
    suffix = value[-1]
    if suffix == "Y":
        if not allow_month_year:
            raise ValueError(f"Years not allowed: {text}")
        recur_type, value = RecurType.ANNUAL_DATE, value[:-1]
    elif suffix == "W":
        recur_type, value = RecurType.WEEKLY, value[:-1]
    elif suffix == "D":
        recur_type, value = RecurType.DAILY, value[:-1]
    elif suffix == "M":
        hours, sep, minutes = value[:-1].partition("H")
        if sep:
            recur_type = RecurType.MINUTELY
            interval = _digits(hours, text) * 60
            value = minutes
        else:
            if not allow_month_year:
                raise ValueError(f"Months not allowed: {text}")
            recur_type, value = RecurType.MONTHLY_DAY, value[:-1]
    else:
        recur_type = RecurType.MINUTELY
    interval += _digits(value, text)
    return recur_type, -interval if negative else interval


def _digits(value: str, text: str) -> int:
    if not value.isdigit():
        raise ValueError(f"Invalid interval: {text}")
    return int(value)


def interval_minutes(recur_type: RecurType, count: int) -> int:
    if recur_type is RecurType.MINUTELY:
        return count
    if recur_type is RecurType.DAILY:
        return count * MINUTES_PER_DAY
    if recur_type is RecurType.WEEKLY:
        return count * 7 * MINUTES_PER_DAY
    raise ValueError(f"{recur_type.value} interval has no fixed length")


def parse_color(text: str) -> str:
    value = text.strip()
    if value[:2].lower() == "0x":
        value = "#" + value[2:]
    if _HEX_RE.fullmatch(value):
        if len(value) == 4:
            value = "#" + "".join(c * 2 for c in value[1:])
        return value.lower()
    named = NAMED_COLORS.get(value.lower())
    if named is None:
        raise ValueError(f"Invalid colour: {text}")
    return named


def _opt(args, name: str, default=None):
    value = getattr(args, name, default)
    return default if value is None else value


def _incompatible(first: str, second: str) -> UsageError:
    return UsageError(f"{first} incompatible with {second}")


def _requires(first: str, second: str) -> UsageError:
    return UsageError(f"{first} requires {second}")


def _invalid(option: str, suffix: str = "") -> UsageError:
    return UsageError(f"Invalid {option} parameter{suffix}")


def build_new_alarm_request(
    args,
    now: Optional[datetime] = None,
    tz: Optional[tzinfo] = None,
    default_bg: str = "#ffffff",
    default_fg: str = "#000000",
) -> NewAlarmRequest:
    """Validate new-alarm options and build the request.

    ``args`` is an argparse namespace, or anything with the same attributes.
    Raises UsageError on any parameter problem.
    """
    now = now or datetime.now().astimezone()
    words: List[str] = list(_opt(args, "message", []))
    exec_command = _opt(args, "exec_command")
    exec_script = _opt(args, "exec_script")
    file_path = _opt(args, "file")
    mail: List[str] = list(_opt(args, "mail", []))
    is_email = False

    if file_path:
        if exec_command or exec_script:
            raise _incompatible("--exec", "--file")
        if mail:
            raise _incompatible("--mail", "--file")
        if words:
            raise UsageError("message incompatible with --file")
        action: Action = FileAction(file_path)
    elif exec_command or exec_script:
        if exec_command and exec_script:
            raise _incompatible("--exec-script", "--exec")
        if mail:
            raise _incompatible("--mail", "--exec")
        command = " ".join([exec_command or exec_script] + words)
        action = CommandAction(command=command, script=bool(exec_script))
    elif mail:
        for address in mail:
            if not _EMAIL_RE.fullmatch(address):
                raise UsageError("--mail: invalid email address")
        action = EmailAction(
            addresses=tuple(mail),
            subject=_opt(args, "subject", ""),
            body=words[0] if words else "",
            attachments=tuple(_opt(args, "attach", [])),
            from_id=_opt(args, "from_id"),
            bcc=bool(_opt(args, "bcc", False)),
        )
        is_email = True
    else:
        if not words:
            raise UsageError("No message, file, command or email specified")
        action = MessageAction(words[0])

    if not is_email:
        for option, name in (("--subject", "subject"), ("--from-id", "from_id"), ("--attach", "attach"), ("--bcc", "bcc")):
            if _opt(args, name):
                raise _requires(option, "--mail")

    bg_color, fg_color = default_bg, default_fg
    if _opt(args, "color"):
        try:
            bg_color = parse_color(args.color)
        except ValueError:
            raise _invalid("--color") from None
    if _opt(args, "colorfg"):
        try:
            fg_color = parse_color(args.colorfg)
        except ValueError:
            raise _invalid("--colorfg") from None

    time_text = _opt(args, "time")
    if time_text:
        try:
            alarm = parse_wake_time(time_text, tz, now=now)
        except ValueError:
            raise _invalid("--time") from None
    else:
        alarm = WakeTime(now.astimezone(tz) if tz is not None else now)
    date_only = alarm.date_only

    login = bool(_opt(args, "login", False))
    until_text = _opt(args, "until")
    repeat_text = _opt(args, "repeat")
    recurrence: Optional[Recurrence] = None
    rule = _opt(args, "recurrence")
    if rule:
        if login:
            raise _incompatible("--login", "--recurrence")
        if until_text:
            raise _incompatible("--until", "--recurrence")
        try:
            recurrence = Recurrence(rule, alarm.when)
        except (ValueError, TypeError):
            raise _invalid("--recurrence") from None

    repeat_interval = repeat_count = 0
    interval_text = _opt(args, "interval")
    if interval_text:
        if login:
            raise _incompatible("--login", "--interval")
        end: Optional[datetime] = None
        if repeat_text is not None:
            try:
                count = int(repeat_text)
            except (TypeError, ValueError):
                raise _invalid("--repeat") from None
            if count == 0 or count < -1 or (count < 0 and recurrence is not None):
                raise _invalid("--repeat")
        elif recurrence is not None:
            raise _requires("--interval", "--repeat")
        elif until_text:
            count = 0
            try:
                end_time = parse_wake_time(until_text, tz, default=alarm.when if time_text else None, now=now)
            except ValueError:
                raise _invalid("--until") from None
            if date_only and not end_time.date_only:
                raise _invalid("--until", " for date-only alarm")
            end = end_time.when
            if end_time.date_only:
                end = end.replace(hour=23, minute=59, second=59)
            if end < alarm.when:
                raise UsageError("--until earlier than --time")
        else:
            count = -1

        try:
            recur_type, interval = parse_interval(interval_text, allow_month_year=recurrence is None)
        except ValueError:
            raise _invalid("--interval") from None
        if interval < 0:
            raise _invalid("--interval")
        if date_only and recur_type is RecurType.MINUTELY:
            raise _invalid("--interval", " for date-only alarm")

        if recurrence is not None:
            # A recurrence is also given, so this is a simple repetition of it.
            interval = interval_minutes(recur_type, interval)
            if count * interval > recurrence.longest_interval():
                raise UsageError(
                    "Invalid --interval and --repeat parameters: repetition is longer than --recurrence interval"
                )
            repeat_count, repeat_interval = count, interval
        else:
            recurrence = Recurrence.simple(recur_type, interval, count, alarm.when, end)
    else:
        if repeat_text is not None:
            raise _requires("--repeat", "--interval")
        if until_text:
            raise _requires("--until", "--interval")

    audio_file = ""
    audio_volume = -1.0
    play = _opt(args, "play")
    play_repeat = _opt(args, "play_repeat")
    beep = bool(_opt(args, "beep", False))
    speak = bool(_opt(args, "speak", False))
    if play or play_repeat:
        play_option = "--play-repeat" if play_repeat else "--play"
        if play and play_repeat:
            raise _incompatible("--play", "--play-repeat")
        if beep:
            raise _incompatible("--beep", play_option)
        if speak:
            raise _incompatible("--speak", play_option)
        audio_file = play_repeat or play
        volume = _opt(args, "volume")
        if volume is not None:
            try:
                percent = int(volume)
            except (TypeError, ValueError):
                raise _invalid("--volume") from None
            if not 0 <= percent <= 100:
                raise _invalid("--volume")
            audio_volume = percent / 100
    elif _opt(args, "volume") is not None:
        raise UsageError("--volume requires --play or --play-repeat")
    if speak and beep:
        raise _incompatible("--beep", "--speak")

    reminder_minutes = 0
    reminder = _opt(args, "reminder")
    reminder_once = _opt(args, "reminder_once")
    if reminder or reminder_once:
        if reminder and reminder_once:
            raise _incompatible("--reminder", "--reminder-once")
        option = "--reminder-once" if reminder_once else "--reminder"
        if exec_command or exec_script:
            raise _incompatible(option, "--exec")
        if mail:
            raise _incompatible(option, "--mail")
        try:
            recur_type, minutes = parse_interval(reminder_once or reminder)
        except ValueError:
            raise _invalid(option) from None
        if recur_type is RecurType.MINUTELY and date_only:
            raise _invalid(option, " for date-only alarm")
        if recur_type not in (RecurType.MINUTELY, RecurType.DAILY, RecurType.WEEKLY):
            raise _invalid(option)
        reminder_minutes = interval_minutes(recur_type, minutes)
        if reminder_once:
            reminder_minutes = -reminder_minutes

    late_cancel = 0
    late_text = _opt(args, "late_cancel")
    if late_text:
        try:
            recur_type, late_cancel = parse_interval(late_text, allow_month_year=False)
            late_cancel = interval_minutes(recur_type, late_cancel)
        except ValueError:
            raise _invalid("--late-cancel") from None
        if late_cancel <= 0:
            raise _invalid("--late-cancel")
    elif _opt(args, "auto_close", False):
        raise _requires("--auto-close", "--late-cancel")

    return NewAlarmRequest(
        action=action,
        when=alarm.when,
        date_only=date_only,
        late_cancel=late_cancel,
        auto_close=bool(_opt(args, "auto_close", False)),
        confirm_ack=bool(_opt(args, "ack_confirm", False)),
        beep=beep,
        speak=speak,
        repeat_sound=bool(play_repeat),
        repeat_at_login=login,
        copy_to_organizer=bool(_opt(args, "korganizer", False)),
        enabled=not _opt(args, "disable", False),
        bg_color=bg_color,
        fg_color=fg_color,
        audio_file=audio_file,
        audio_volume=audio_volume,
        reminder_minutes=reminder_minutes,
        recurrence=recurrence,
        repeat_interval=repeat_interval,
        repeat_count=repeat_count,
    )
