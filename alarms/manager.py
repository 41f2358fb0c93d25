from __future__ import annotations

import copy
import logging
from datetime import datetime, time
from enum import Enum
from functools import partial
from threading import Event as ThreadEvent, RLock
from typing import Callable, Optional

from .dispatch_loop import Continuation, DispatchLoop, EventFunction, QueueEntry
from .dispatcher import ExecutionDispatcher
from .event import AlarmInstance, AlarmRole, Event, new_event_id
from .parser import NewAlarmRequest
from .process import DEFAULT_XTERM_COMMAND, ProcessRecord, ProcessResult, ProcessRunner, ProcFlags
from .recurrence import Repetition
from .storage import AlarmCalendar, CalendarError
from .timing import DEFAULT_CHECK_INTERVAL, align, date_only_limit, is_due, secs_to
from .trigger import TriggerEvaluator, Verdict

logger = logging.getLogger(__name__)


class FatalError(RuntimeError):
    """The engine cannot continue, e.g. the calendar cannot be opened."""


class ShutdownState(Enum):
    RUNNING = "running"
    SHUTDOWN_REQUESTED = "shutdown_requested"
    WAITING_ON_QUEUE = "waiting_on_queue"
    WAITING_ON_PROCESSES = "waiting_on_processes"
    TERMINATED = "terminated"


class AlarmManager:
    """Engine context: owns the dispatch loop and wires the collaborators.

    Every calendar mutation runs on the dispatch loop, one at a time.
    """

    def __init__(
        self,
        calendar: AlarmCalendar,
        display,
        mailer=None,
        shell: str = "/bin/sh",
        xterm_command: str = DEFAULT_XTERM_COMMAND,
        commands_authorised: bool = True,
        check_interval: int = DEFAULT_CHECK_INTERVAL,
        archived_keep_days: int = 7,
        start_of_day: time = time(0, 0),
        timezone=None,
        clock: Optional[Callable[[], datetime]] = None,
        temp_dir: Optional[str] = None,
    ):
        self.calendar = calendar
        self.display = display
        self.mailer = mailer
        self.daemon = None
        self.archived_keep_days = archived_keep_days
        self.start_of_day = start_of_day
        self.tzinfo = timezone or datetime.now().astimezone().tzinfo
        self._clock = clock or (lambda: datetime.now(self.tzinfo))

        self.evaluator = TriggerEvaluator(check_interval)
        self.runner = ProcessRunner(
            display,
            shell=shell,
            xterm_command=xterm_command,
            authorised=commands_authorised,
            on_exit=self._on_command_exited,
            temp_dir=temp_dir,
        )
        self.dispatcher = ExecutionDispatcher(
            display,
            mailer,
            self.runner,
            reschedule=self._reschedule_after_execution,
            completed=self.alarm_completed,
        )
        self.loop = DispatchLoop(self._process_entry, before_drain=self._before_drain, after_drain=self._after_drain)

        self.initialised = False
        self.shutdown_state = ShutdownState.RUNNING
        self.exit_code = 0
        self.fatal_message: Optional[str] = None
        self.terminated = ThreadEvent()
        self._force_quit = False
        self._state_lock = RLock()

    def now(self) -> datetime:
        return self._clock()

    def attach_daemon(self, daemon) -> None:
        self.daemon = daemon
        self.evaluator.check_interval = daemon.max_time_since_check()

    # Startup and the dispatch loop

    def init_check(self) -> bool:
        """Open the calendar on first use. False after a fatal error."""
        if self.fatal_message is not None:
            return False
        if self.initialised:
            return True
        try:
            self._open_calendar()
        except FatalError as exc:
            self.fatal_error(str(exc))
            return False
        self.initialised = True
        # The start of day may have changed since the calendar was last written.
        self.change_start_of_day(self.start_of_day)
        return True

    def _open_calendar(self) -> None:
        self.calendar.set_purge_days(self.archived_keep_days)
        try:
            self.calendar.open()
        except CalendarError as exc:
            raise FatalError(f"Unable to open calendar: {exc}") from exc

    def start(self) -> None:
        if not self.init_check():
            raise FatalError(self.fatal_message or "Alarm engine failed to start")
        self.loop.start()
        if self.daemon is not None:
            self.daemon.start()
        logger.info("Alarm engine started")

    def stop(self) -> None:
        if self.daemon is not None:
            self.daemon.stop()
        self.loop.stop()

    def process_queue(self) -> bool:
        """Drain the queue on the calling thread."""
        if not self.initialised or self.fatal_message is not None:
            return False
        return self.loop.drain()

    def queue_event(self, event_id: str, function: EventFunction = EventFunction.HANDLE) -> bool:
        logger.debug("Queued %s for event %s", function.value, event_id)
        self.loop.post(QueueEntry(function, event_id=event_id))
        return True

    def notify_due(self, event_id: str) -> None:
        self.queue_event(event_id, EventFunction.HANDLE)

    def _process_entry(self, entry: QueueEntry) -> None:
        if not entry.is_new:
            self.handle_event(entry.event_id, entry.function)
            return
        event = entry.event
        if entry.function is EventFunction.TRIGGER:
            instance = event.first_instance()
            if instance is not None:
                self.dispatcher.execute(event, instance, reschedule=False)
        elif entry.function is EventFunction.INSERT:
            self.calendar.add(event)
            self._event_handled(event.id)
        else:
            logger.debug("Discarded new event %s", event.id)

    def _before_drain(self) -> None:
        if self.daemon is not None:
            self.daemon.reset_if_queued()

    def _after_drain(self) -> None:
        self.calendar.purge_if_queued()
        if self.shutdown_state in (ShutdownState.SHUTDOWN_REQUESTED, ShutdownState.WAITING_ON_QUEUE):
            self._check_shutdown(queue_busy=False)

    # Scheduling

    def schedule_event(self, request: NewAlarmRequest) -> bool:
        """Create an event from ``request`` and queue it.

        An event which is already too late to show is accepted but discarded.
        """
        now = self.now()
        if request.late_cancel and self._too_late(request, now):
            logger.info("Alarm for %s is already too late, discarded", request.when.isoformat())
            return True
        start = request.when
        if not request.date_only:
            start = start.replace(second=0, microsecond=0)
        event = Event(
            id=new_event_id(),
            start=start,
            action=request.action,
            date_only=request.date_only,
            bg_color=request.bg_color,
            fg_color=request.fg_color,
            late_cancel=request.late_cancel,
            auto_close=request.auto_close,
            confirm_ack=request.confirm_ack,
            beep=request.beep,
            speak=request.speak,
            repeat_sound=request.repeat_sound,
            repeat_at_login=request.repeat_at_login,
            copy_to_organizer=request.copy_to_organizer,
            enabled=request.enabled,
            audio_file=request.audio_file,
            audio_volume=request.audio_volume,
            created_at=now,
        )
        if request.reminder_minutes:
            event.set_reminder(abs(request.reminder_minutes), once_only=request.reminder_minutes < 0)
        if request.repeat_at_login:
            event.at_login_time = now
        event.recurrence = request.recurrence
        event.set_first_recurrence()
        if request.repeat_interval and request.repeat_count > 1:
            event.repetition = Repetition(request.repeat_interval, request.repeat_count - 1)
        if request.date_only:
            event.adjust_start_of_day(self.start_of_day)
        event.updated = False

        if is_due(event.start, now):
            # Execute it once without adding it to the calendar.
            self.loop.post(QueueEntry(EventFunction.TRIGGER, event=copy.deepcopy(event)))
            event.last_triggered = event.start
            if not event.recurs or not event.set_next_occurrence(now, include_repetitions=True):
                return True
        self.loop.post(QueueEntry(EventFunction.INSERT, event=event))
        logger.info("Alarm %s scheduled for %s", event.id, event.start.isoformat())
        return True

    def _too_late(self, request: NewAlarmRequest, now: datetime) -> bool:
        if request.date_only:
            return align(now, request.when) >= date_only_limit(request.when, request.late_cancel)
        return secs_to(request.when, now) > self.evaluator.max_lateness(request.late_cancel)

    def handle_event(self, event_id: str, function: EventFunction = EventFunction.HANDLE) -> bool:
        """Act on an existing event: show it if due, trigger it, or cancel it."""
        logger.debug("handle_event: %s, %s", event_id, function.value)
        event = self.calendar.load_event(event_id)
        if event is None:
            logger.warning("handle_event: event %s not found", event_id)
            self._event_handled(event_id)
            return False
        if function is EventFunction.CANCEL:
            if self._to_be_archived(event):
                self.calendar.archive(event)
            self._delete_event(event)
            return True

        evaluation = self.evaluator.evaluate(event, self.now())
        for action in evaluation.actions:
            if action.verdict is Verdict.CANCEL:
                event.archive = True
                self.cancel_alarm(event, action.instance.role, update=False)
            else:
                self.reschedule_alarm(event, action.instance, update=False)
            if event.deleted:
                return True

        due = evaluation.due
        if due is None:
            if function is EventFunction.TRIGGER:
                # Only one alarm from the event, to avoid duplicate messages.
                instance = event.first_instance()
                if instance is not None:
                    self.dispatcher.execute(event, instance, reschedule=False)
            if event.updated:
                self._update_event(event)
            elif function is not EventFunction.TRIGGER:
                logger.debug("handle_event: %s, no action", event_id)
                self._event_handled(event_id)
            return True

        # Executed last so that the event is written back once.
        if due.repeat_at_login:
            self.dispatcher.execute(event, due, reschedule=False, allow_defer=False)
        else:
            self.dispatcher.execute(event, due, reschedule=True, allow_defer=True)
        if event.updated and not event.deleted:
            self._update_event(event)
        return True

    def _reschedule_after_execution(self, event: Event, instance: AlarmInstance) -> None:
        self.reschedule_alarm(event, instance, update=True)

    def reschedule_alarm(self, event: Event, instance: AlarmInstance, update: bool = True) -> None:
        """Move past ``instance``: drop it, or advance the main alarm."""
        if instance.is_reminder or instance.deferred:
            event.remove_expired(instance.role)
        elif instance.repeat_at_login:
            # Stays until its main alarm is removed.
            pass
        else:
            now = self.now()
            occurrence = event.next_occurrence(now, include_repetitions=True)
            if occurrence.repeat:
                # More repetitions to come within this recurrence.
                if occurrence.base is not None and occurrence.base != event.start:
                    event.start = occurrence.base
                    event.reminder_pending = False
                event.last_triggered = instance.when
                event.updated = True
            elif not event.set_next_occurrence(now):
                self.cancel_alarm(event, instance.role, update)
                return
            if event.deferral is not None:
                event.remove_expired(AlarmRole.DEFERRED)
        if update and event.updated:
            self._update_event(event)

    def cancel_alarm(self, event: Event, role: AlarmRole, update: bool = True) -> None:
        """Remove one alarm of ``event``, deleting the event once none are left."""
        if role is AlarmRole.MAIN and self.display.find_window(event.id) is None and self._to_be_archived(event):
            self.calendar.archive(event)
        event.remove_expired(role)
        if not event.alarm_count():
            self._delete_event(event)
        elif update:
            self._update_event(event)

    def _to_be_archived(self, event: Event) -> bool:
        return event.archive and self.calendar.purge_days != 0

    def _update_event(self, event: Event) -> None:
        self.calendar.save(event)
        event.updated = False
        self._event_handled(event.id)

    def _delete_event(self, event: Event) -> None:
        self.calendar.delete(event)
        event.deleted = True
        self._event_handled(event.id)

    def _event_handled(self, event_id: str) -> None:
        if self.daemon is not None:
            self.daemon.event_handled(event_id)

    def change_start_of_day(self, start_of_day: time) -> bool:
        """Move date-only alarms to a new start-of-day time."""
        self.start_of_day = start_of_day
        changed = 0
        for event in self.calendar.events():
            if event.adjust_start_of_day(start_of_day):
                self.calendar.save(event)
                changed += 1
        if changed:
            logger.info("Moved %s date-only alarms to %s", changed, start_of_day.strftime("%H:%M"))
        return bool(changed)

    # Actions and commands

    def alarm_completed(self, event: Event) -> None:
        """Run the post-alarm action once an alarm's action has finished."""
        if event.post_action and self.runner.authorised:
            logger.info("Post-alarm action for event %s: %s", event.id, event.post_action)
            self.runner.run(event.post_action, event, None, ProcFlags.POST_ACTION)
        if self.shutdown_state is ShutdownState.SHUTDOWN_REQUESTED and self._force_quit:
            self._check_shutdown(queue_busy=self.loop.draining)

    def command_message(self, record: ProcessRecord, parent) -> None:
        self.runner.command_message(record, parent)

    def _on_command_exited(self, record: ProcessRecord, result: ProcessResult) -> None:
        # Called on the command's watcher thread.
        self.loop.post(
            Continuation(partial(self._command_exited, record, result), f"command exit for event {record.event.id}")
        )

    def _command_exited(self, record: ProcessRecord, result: ProcessResult) -> None:
        if record.pre_action:
            # A failed pre-alarm action does not block the alarm itself.
            event = record.event
            self.dispatcher.execute(
                event, record.instance, record.reschedule, record.allow_defer, skip_pre_action=True
            )
            if event.updated and not event.deleted:
                self._update_event(event)
        elif not record.post_action and result.exited_normally:
            self.alarm_completed(record.event)
        if self.shutdown_state is ShutdownState.WAITING_ON_PROCESSES:
            self._check_shutdown(queue_busy=False)

    # Shutdown

    def quit_if(self, exit_code: int = 0, force: bool = False) -> bool:
        """Request shutdown. Returns True once the engine has terminated.

        Without ``force`` nothing happens while a message window is open;
        otherwise shutdown waits for queued work and running commands.
        ``force`` closes everything except message windows, and waits for those.
        """
        with self._state_lock:
            if self.shutdown_state is ShutdownState.TERMINATED:
                return True
            self.exit_code = exit_code
            self._force_quit = self._force_quit or force
            self.shutdown_state = ShutdownState.SHUTDOWN_REQUESTED
        return self._check_shutdown(queue_busy=self.loop.draining and not self.loop.in_loop_thread)

    def _check_shutdown(self, queue_busy: bool) -> bool:
        with self._state_lock:
            if self.shutdown_state is ShutdownState.TERMINATED:
                return True
            if not self._ready_to_terminate(queue_busy):
                return False
            self.shutdown_state = ShutdownState.TERMINATED
            self.terminated.set()
        logger.info("Alarm engine quitting (exit code %s)", self.exit_code)
        # Outside the lock: the loop thread may be waiting on it.
        self.stop()
        return True

    def _ready_to_terminate(self, queue_busy: bool) -> bool:
        if self.shutdown_state is ShutdownState.RUNNING:
            return False
        if self._force_quit:
            self.display.close_main_windows()
            if self.display.instance_count():
                logger.info("Shutdown waiting for message windows")
                return False
            return True
        if self.display.instance_count():
            logger.info("Shutdown cancelled: message windows are open")
            self.shutdown_state = ShutdownState.RUNNING
            return False
        if queue_busy or self.loop.pending_count():
            self.shutdown_state = ShutdownState.WAITING_ON_QUEUE
            logger.info("Shutdown waiting for queued alarms")
            return False
        if self.runner.active_count():
            self.shutdown_state = ShutdownState.WAITING_ON_PROCESSES
            logger.info("Shutdown waiting for %s running commands", self.runner.active_count())
            return False
        return True

    def fatal_error(self, message: str) -> None:
        """Stop all processing after an unrecoverable error."""
        if self.fatal_message is not None:
            return
        self.fatal_message = message
        logger.critical("Fatal error: %s", message)
        self.loop.disable()
        self.display.show_fatal(message)
        self.quit_fatal()

    def quit_fatal(self) -> None:
        self.quit_if(1, force=True)
