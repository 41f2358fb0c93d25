from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, time, timedelta
from enum import Enum
from typing import Iterator, Optional, Tuple, Union

from . import timing
from .recurrence import Recurrence, Repetition


class AlarmRole(Enum):
    MAIN = "main"
    REMINDER = "reminder"
    DEFERRED = "deferred"
    REPEAT_AT_LOGIN = "repeat_at_login"


@dataclass(frozen=True)
class MessageAction:
    text: str


@dataclass(frozen=True)
class FileAction:
    path: str


@dataclass(frozen=True)
class CommandAction:
    command: str
    script: bool = False
    in_terminal: bool = False
    log_file: Optional[str] = None


@dataclass(frozen=True)
class EmailAction:
    addresses: Tuple[str, ...]
    subject: str
    body: str
    attachments: Tuple[str, ...] = ()
    from_id: Optional[str] = None
    bcc: bool = False


Action = Union[MessageAction, FileAction, CommandAction, EmailAction]


def action_to_dict(action: Action) -> dict:
    if isinstance(action, MessageAction):
        return {"kind": "message", "text": action.text}
    if isinstance(action, FileAction):
        return {"kind": "file", "path": action.path}
    if isinstance(action, CommandAction):
        return {
            "kind": "command",
            "command": action.command,
            "script": action.script,
            "in_terminal": action.in_terminal,
            "log_file": action.log_file,
        }
    if isinstance(action, EmailAction):
        return {
            "kind": "email",
            "addresses": list(action.addresses),
            "subject": action.subject,
            "body": action.body,
            "attachments": list(action.attachments),
            "from_id": action.from_id,
            "bcc": action.bcc,
        }
    raise TypeError(f"Unknown alarm action {action!r}")


def action_from_dict(data: dict) -> Action:
    kind = data.get("kind")
    if kind == "message":
        return MessageAction(text=str(data.get("text", "")))
    if kind == "file":
        return FileAction(path=str(data["path"]))
    if kind == "command":
        return CommandAction(
            command=str(data["command"]),
            script=bool(data.get("script", False)),
            in_terminal=bool(data.get("in_terminal", False)),
            log_file=data.get("log_file"),
        )
    if kind == "email":
        return EmailAction(
            addresses=tuple(data.get("addresses") or ()),
            subject=str(data.get("subject", "")),
            body=str(data.get("body", "")),
            attachments=tuple(data.get("attachments") or ()),
            from_id=data.get("from_id"),
            bcc=bool(data.get("bcc", False)),
        )
    raise ValueError(f"Unknown alarm action kind: {kind!r}")


@dataclass(frozen=True)
class Deferral:
    when: datetime
    reminder: bool = False


@dataclass(frozen=True)
class AlarmInstance:
    """One role-tagged firing of an event, derived on demand."""

    role: AlarmRole
    when: datetime
    date_only: bool = False
    deferred_reminder: bool = False

    @property
    def is_reminder(self) -> bool:
        return self.role is AlarmRole.REMINDER or self.deferred_reminder

    @property
    def deferred(self) -> bool:
        return self.role is AlarmRole.DEFERRED

    @property
    def repeat_at_login(self) -> bool:
        return self.role is AlarmRole.REPEAT_AT_LOGIN

    def at(self, when: datetime) -> "AlarmInstance":
        return replace(self, when=when)


def new_event_id() -> str:
    return f"al_{uuid.uuid4().hex[:8]}"


@dataclass
class Event:
    id: str
    start: datetime
    action: Action
    date_only: bool = False
    bg_color: str = "#ffffff"
    fg_color: str = "#000000"
    late_cancel: int = 0
    auto_close: bool = False
    confirm_ack: bool = False
    beep: bool = False
    speak: bool = False
    repeat_sound: bool = False
    repeat_at_login: bool = False
    copy_to_organizer: bool = False
    enabled: bool = True
    recurrence: Optional[Recurrence] = None
    repetition: Repetition = field(default_factory=Repetition)
    deferral: Optional[Deferral] = None
    reminder_minutes: int = 0
    reminder_once: bool = False
    reminder_pending: bool = True
    main_pending: bool = True
    at_login_time: Optional[datetime] = None
    last_triggered: Optional[datetime] = None
    pre_action: str = ""
    post_action: str = ""
    audio_file: str = ""
    audio_volume: float = -1.0
    archive: bool = False
    created_at: Optional[datetime] = None
    archived_at: Optional[datetime] = None
    # Runtime state, never persisted.
    updated: bool = field(default=False, compare=False)
    displaying: bool = field(default=False, compare=False)
    deleted: bool = field(default=False, compare=False)

    @property
    def recurs(self) -> bool:
        return self.recurrence is not None

    @property
    def text(self) -> str:
        action = self.action
        if isinstance(action, MessageAction):
            return action.text
        if isinstance(action, FileAction):
            return action.path
        if isinstance(action, CommandAction):
            return action.command
        return action.subject

    def instances(self) -> Iterator[AlarmInstance]:
        """Alarm instances, main alarm first."""
        if self.main_pending:
            yield AlarmInstance(AlarmRole.MAIN, self.start, self.date_only)
            if self.reminder_minutes and self.reminder_pending:
                when = self.start - timedelta(minutes=self.reminder_minutes)
                yield AlarmInstance(AlarmRole.REMINDER, when, self.date_only)
        if self.deferral is not None:
            yield AlarmInstance(
                AlarmRole.DEFERRED,
                self.deferral.when,
                deferred_reminder=self.deferral.reminder,
            )
        if self.repeat_at_login and self.at_login_time is not None:
            yield AlarmInstance(AlarmRole.REPEAT_AT_LOGIN, self.at_login_time)

    def first_instance(self) -> Optional[AlarmInstance]:
        return next(self.instances(), None)

    def alarm_count(self) -> int:
        return sum(1 for _ in self.instances())

    def remove_expired(self, role: AlarmRole) -> None:
        if role is AlarmRole.MAIN:
            # Subsidiary alarms go with the main alarm.
            self.main_pending = False
            self.reminder_pending = False
            self.deferral = None
            self.repeat_at_login = False
            self.at_login_time = None
        elif role is AlarmRole.REMINDER:
            self.reminder_pending = False
        elif role is AlarmRole.DEFERRED:
            self.deferral = None
        elif role is AlarmRole.REPEAT_AT_LOGIN:
            self.repeat_at_login = False
            self.at_login_time = None
        self.updated = True

    def defer(self, when: datetime, reminder: bool = False) -> None:
        self.deferral = Deferral(when=when, reminder=reminder)
        self.updated = True

    def set_reminder(self, minutes: int, once_only: bool = False) -> None:
        self.reminder_minutes = minutes
        self.reminder_once = once_only
        self.reminder_pending = minutes > 0

    def set_first_recurrence(self) -> None:
        if self.recurrence is None:
            return
        first = self.recurrence.first()
        if first is not None and first != self.start:
            self.start = first

    @property
    def main_end_repeat_time(self) -> datetime:
        return self.repetition.end(self.start)

    def previous_occurrence(self, before: datetime, include_repetitions: bool = True) -> timing.Occurrence:
        return timing.previous_occurrence(
            self.start, self.recurrence, self.repetition, before, self.date_only, include_repetitions
        )

    def next_occurrence(self, after: datetime, include_repetitions: bool = False) -> timing.Occurrence:
        return timing.next_occurrence(
            self.start, self.recurrence, self.repetition, after, self.date_only, include_repetitions
        )

    def set_next_occurrence(self, after: datetime, include_repetitions: bool = False) -> timing.Occurrence:
        """Advance the main alarm to the next recurrence after ``after``.

        A repeat within the current recurrence leaves the stored start alone,
        since repetitions are always derived from it.
        """
        occurrence = self.next_occurrence(after, include_repetitions)
        if not occurrence or occurrence.repeat or occurrence.kind is timing.OccurKind.FIRST_OR_ONLY:
            return occurrence
        if occurrence.when != self.start:
            self.start = occurrence.when
            self.reminder_pending = bool(self.reminder_minutes) and not self.reminder_once
            self.last_triggered = None
            self.updated = True
        return occurrence

    def adjust_start_of_day(self, start_of_day: time) -> bool:
        """Move a date-only alarm to the new start-of-day time."""
        if not self.date_only:
            return False
        moved = self.start.replace(hour=start_of_day.hour, minute=start_of_day.minute, second=0, microsecond=0)
        if moved == self.start:
            return False
        delta = moved - self.start
        self.start = moved
        if self.recurrence is not None:
            self.recurrence = Recurrence(self.recurrence.rule, self.recurrence.dtstart + delta)
        self.updated = True
        return True

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "start": self.start.isoformat(),
            "action": action_to_dict(self.action),
            "date_only": self.date_only,
            "bg_color": self.bg_color,
            "fg_color": self.fg_color,
            "late_cancel": self.late_cancel,
            "auto_close": self.auto_close,
            "confirm_ack": self.confirm_ack,
            "beep": self.beep,
            "speak": self.speak,
            "repeat_sound": self.repeat_sound,
            "repeat_at_login": self.repeat_at_login,
            "copy_to_organizer": self.copy_to_organizer,
            "enabled": self.enabled,
            "recurrence": self.recurrence.to_dict() if self.recurrence else None,
            "repetition": self.repetition.to_dict(),
            "deferral": (
                {"when": self.deferral.when.isoformat(), "reminder": self.deferral.reminder}
                if self.deferral
                else None
            ),
            "reminder_minutes": self.reminder_minutes,
            "reminder_once": self.reminder_once,
            "reminder_pending": self.reminder_pending,
            "main_pending": self.main_pending,
            "at_login_time": _iso(self.at_login_time),
            "last_triggered": _iso(self.last_triggered),
            "pre_action": self.pre_action,
            "post_action": self.post_action,
            "audio_file": self.audio_file,
            "audio_volume": self.audio_volume,
            "archive": self.archive,
            "created_at": _iso(self.created_at),
            "archived_at": _iso(self.archived_at),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Event":
        start_raw = data.get("start")
        if not start_raw or "action" not in data:
            raise ValueError("Event payload missing start/action fields")
        deferral = data.get("deferral")
        recurrence = data.get("recurrence")
        return cls(
            id=str(data.get("id") or new_event_id()),
            start=datetime.fromisoformat(start_raw),
            action=action_from_dict(data["action"]),
            date_only=bool(data.get("date_only", False)),
            bg_color=str(data.get("bg_color", "#ffffff")),
            fg_color=str(data.get("fg_color", "#000000")),
            late_cancel=int(data.get("late_cancel", 0)),
            auto_close=bool(data.get("auto_close", False)),
            confirm_ack=bool(data.get("confirm_ack", False)),
            beep=bool(data.get("beep", False)),
            speak=bool(data.get("speak", False)),
            repeat_sound=bool(data.get("repeat_sound", False)),
            repeat_at_login=bool(data.get("repeat_at_login", False)),
            copy_to_organizer=bool(data.get("copy_to_organizer", False)),
            enabled=bool(data.get("enabled", True)),
            recurrence=Recurrence.from_dict(recurrence) if recurrence else None,
            repetition=Repetition.from_dict(data.get("repetition")),
            deferral=(
                Deferral(datetime.fromisoformat(deferral["when"]), bool(deferral.get("reminder", False)))
                if deferral
                else None
            ),
            reminder_minutes=int(data.get("reminder_minutes", 0)),
            reminder_once=bool(data.get("reminder_once", False)),
            reminder_pending=bool(data.get("reminder_pending", True)),
            main_pending=bool(data.get("main_pending", True)),
            at_login_time=_parse(data.get("at_login_time")),
            last_triggered=_parse(data.get("last_triggered")),
            pre_action=str(data.get("pre_action", "")),
            post_action=str(data.get("post_action", "")),
            audio_file=str(data.get("audio_file", "")),
            audio_volume=float(data.get("audio_volume", -1.0)),
            archive=bool(data.get("archive", False)),
            created_at=_parse(data.get("created_at")),
            archived_at=_parse(data.get("archived_at")),
        )


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def sort_key(event: Event) -> datetime:
    return event.start if event.start.tzinfo is not None else event.start.astimezone()
