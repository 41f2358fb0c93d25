"""Alarm engine: calendar, trigger evaluation, dispatch and action execution."""

from .manager import AlarmManager, FatalError, ShutdownState
from .parser import NewAlarmRequest, UsageError, build_new_alarm_request
from .storage import AlarmCalendar, CalendarError
