from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from .dispatch_loop import EventFunction
from .manager import AlarmManager
from .parser import build_new_alarm_request

logger = logging.getLogger(__name__)

DAEMON_PREFIX = "ad:"


@dataclass
class RequestResult:
    handled: bool
    response_text: Optional[str] = None
    action: Optional[str] = None
    event_id: Optional[str] = None
    from_daemon: bool = False


class RequestRouter:
    """Maps trigger and new-alarm requests onto engine calls."""

    def __init__(self, alarm_manager: AlarmManager, default_bg: str = "#ffffff", default_fg: str = "#000000"):
        self.alarm_manager = alarm_manager
        self.default_bg = default_bg
        self.default_fg = default_fg

    def handle_trigger(self, function: EventFunction, event_id: str) -> RequestResult:
        from_daemon = event_id.startswith(DAEMON_PREFIX)
        if from_daemon:
            event_id = event_id[len(DAEMON_PREFIX):]
            logger.debug("Notification from the alarm daemon for event %s", event_id)
        if not self.alarm_manager.init_check():
            return RequestResult(handled=False, response_text=self.alarm_manager.fatal_message, action=function.value)

        found = self.alarm_manager.calendar.load_event(event_id) is not None
        self.alarm_manager.queue_event(event_id, function)
        self.alarm_manager.process_queue()
        if not found:
            return RequestResult(
                handled=False,
                response_text=f"Event {event_id} not found",
                action=function.value,
                event_id=event_id,
                from_daemon=from_daemon,
            )
        verbs = {
            EventFunction.HANDLE: "handled",
            EventFunction.TRIGGER: "triggered",
            EventFunction.CANCEL: "cancelled",
        }
        return RequestResult(
            handled=True,
            response_text=f"Event {event_id} {verbs.get(function, function.value)}",
            action=function.value,
            event_id=event_id,
            from_daemon=from_daemon,
        )

    def handle_new_alarm(self, args, now: Optional[datetime] = None) -> RequestResult:
        """Build and schedule a new alarm. Raises UsageError on bad parameters."""
        now = now or self.alarm_manager.now()
        request = build_new_alarm_request(
            args,
            now=now,
            tz=self.alarm_manager.tzinfo,
            default_bg=self.default_bg,
            default_fg=self.default_fg,
        )
        logger.info("New alarm request: %s at %s", type(request.action).__name__, request.when.isoformat())
        if not self.alarm_manager.init_check():
            return RequestResult(handled=False, response_text=self.alarm_manager.fatal_message, action="add")
        if not self.alarm_manager.schedule_event(request):
            return RequestResult(handled=False, response_text="Failed to schedule alarm", action="add")
        self.alarm_manager.process_queue()
        if request.date_only:
            when_text = request.when.strftime("%d.%m.%Y")
        else:
            when_text = format_alarm_time(request.when, now)
        return RequestResult(handled=True, response_text=f"Alarm scheduled for {when_text}", action="add")


_DAY_NAMES = {0: "today", 1: "tomorrow", 2: "the day after tomorrow"}


def format_alarm_time(dt: datetime, now: datetime) -> str:
    """Short human description of an alarm time relative to ``now``."""
    if dt.tzinfo is not None and now.tzinfo is not None:
        now = now.astimezone(dt.tzinfo)
    day = _DAY_NAMES.get((dt.date() - now.date()).days)
    if day is None:
        day = dt.strftime("%d.%m")
    return f"{day} {dt:%H:%M}"
