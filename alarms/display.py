from __future__ import annotations

import logging
import sys
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from threading import Lock
from typing import Callable, Dict, List, Optional, TextIO

from .event import AlarmInstance, AlarmRole, Event, FileAction, MessageAction

logger = logging.getLogger(__name__)


@dataclass
class DisplayOptions:
    reschedule: bool = True
    allow_defer: bool = True


class MessageWindow:
    """An alarm message shown for one event."""

    def __init__(
        self,
        display: "ConsoleDisplay",
        event: Event,
        instance: AlarmInstance,
        options: DisplayOptions,
        on_closed: Optional[Callable[["MessageWindow"], None]] = None,
    ):
        self.display = display
        self.event = event
        self.instance = instance
        self.options = options
        self.on_closed = on_closed
        # Login alarms are shown without a Defer button.
        self.has_defer = options.allow_defer and not instance.repeat_at_login
        self.recreating = False
        self.alert_count = 0
        self.closed = False

    @property
    def event_id(self) -> str:
        return self.event.id

    @property
    def role(self) -> AlarmRole:
        return self.instance.role

    @property
    def is_reminder(self) -> bool:
        return self.instance.is_reminder

    def repeat(self, instance: AlarmInstance) -> None:
        """Raise the window again and replay its alert."""
        self.instance = instance
        self.display.render(self)

    def acknowledge(self) -> None:
        self.close()

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.display.forget(self)
        if self.recreating or not self.on_closed:
            return
        try:
            self.on_closed(self)
        except Exception:
            logger.error("Message window close handler failed for event %s", self.event_id, exc_info=True)


class ConsoleDisplay:
    """Renders alarm messages, files and error reports to a text stream.

    With ``auto_acknowledge`` set, a window is closed as soon as it has been
    rendered; otherwise it stays open until acknowledged.
    """

    def __init__(self, stream: Optional[TextIO] = None, auto_acknowledge: bool = True):
        self.stream = stream or sys.stdout
        self.auto_acknowledge = auto_acknowledge
        self._windows: Dict[str, MessageWindow] = {}
        self._dialogs: Dict[int, str] = {}
        self._lock = Lock()

    def find_window(self, event_id: str) -> Optional[MessageWindow]:
        with self._lock:
            return self._windows.get(event_id)

    def instance_count(self) -> int:
        with self._lock:
            return len(self._windows)

    def show_message(
        self,
        event: Event,
        instance: AlarmInstance,
        options: DisplayOptions,
        on_closed: Optional[Callable[[MessageWindow], None]] = None,
    ) -> MessageWindow:
        window = MessageWindow(self, event, instance, options, on_closed)
        with self._lock:
            self._windows[event.id] = window
        event.displaying = True
        self.render(window)
        if self.auto_acknowledge and not event.confirm_ack:
            window.close()
        return window

    def show_errors(self, event: Event, when: Optional[datetime], messages: List[str]) -> None:
        stamp = f" ({_format_when(when)})" if when is not None else ""
        logger.error("Alarm error for event %s%s: %s", event.id, stamp, " | ".join(messages))
        self._write(f"*** Alarm error{stamp} ***\n" + "\n".join(messages) + "\n")

    def replace_dialog(self, parent, message: str) -> None:
        """Close the informational dialog held by ``parent`` and show an error."""
        with self._lock:
            self._dialogs.pop(id(parent), None)
        logger.error("Command error: %s", message)
        self._write(f"*** Error ***\n{message}\n")

    def show_info(self, parent, message: str) -> None:
        with self._lock:
            self._dialogs[id(parent)] = message
        self._write(f"{message}\n")

    def show_fatal(self, message: str) -> None:
        logger.critical("Fatal error: %s", message)
        self._write(f"*** Fatal error ***\n{message}\n")

    def close_main_windows(self) -> None:
        with self._lock:
            self._dialogs.clear()

    def close_all(self) -> None:
        for window in list(self._windows.values()):
            window.close()

    def forget(self, window: MessageWindow) -> None:
        with self._lock:
            if self._windows.get(window.event_id) is window:
                del self._windows[window.event_id]
        window.event.displaying = False

    def render(self, window: MessageWindow) -> None:
        window.alert_count += 1
        event = window.event
        title = "Reminder" if window.is_reminder else "Message"
        lines = [f"=== {title}: {_format_when(window.instance.when)} ==="]
        action = event.action
        if isinstance(action, MessageAction):
            lines.append(action.text)
        elif isinstance(action, FileAction):
            lines.append(_read_file(action.path))
        if event.beep:
            lines.append("\a")
        if event.audio_file:
            logger.info("Alarm sound for event %s: %s", event.id, event.audio_file)
        logger.info("Displaying alarm %s (%s)", event.id, window.role.value)
        self._write("\n".join(lines) + "\n")

    def _write(self, text: str) -> None:
        with self._lock:
            self.stream.write(text)
            self.stream.flush()


def _read_file(path: str) -> str:
    try:
        return Path(path).expanduser().read_text(encoding="utf-8")
    except FileNotFoundError:
        return f"File not found: {path}"
    except UnicodeDecodeError:
        return f"File is not a text file: {path}"
    except OSError as exc:
        return f"Error opening file {path}: {exc}"


def _format_when(when: Optional[datetime]) -> str:
    if when is None:
        return ""
    return when.strftime("%Y-%m-%d %H:%M")
