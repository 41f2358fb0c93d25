from __future__ import annotations

import logging
from enum import Enum
from typing import Callable, List, Optional

from .display import DisplayOptions
from .event import AlarmInstance, CommandAction, EmailAction, Event, FileAction, MessageAction
from .process import TEMP_SCRIPT_ERROR, ProcessRecord, ProcessRunner, ProcFlags

logger = logging.getLogger(__name__)


class Outcome(Enum):
    DONE = "done"
    # The action waits for its pre-alarm command to finish.
    PENDING = "pending"
    FAILED = "failed"
    DISABLED = "disabled"


class ExecutionDispatcher:
    """Performs the action of one alarm instance.

    ``reschedule`` is called as ``reschedule(event, instance)`` once the
    schedule should move on; ``completed`` is called as ``completed(event)``
    once an action has finished, to run any post-alarm command.
    """

    def __init__(
        self,
        display,
        mailer,
        runner: ProcessRunner,
        reschedule: Callable[[Event, AlarmInstance], None],
        completed: Callable[[Event], None],
    ):
        self.display = display
        self.mailer = mailer
        self.runner = runner
        self.reschedule = reschedule
        self.completed = completed

    def execute(
        self,
        event: Event,
        instance: AlarmInstance,
        reschedule: bool = True,
        allow_defer: bool = True,
        skip_pre_action: bool = False,
    ) -> Outcome:
        if not event.enabled:
            if reschedule:
                self.reschedule(event, instance)
            return Outcome.DISABLED
        event.archive = True
        action = event.action
        if isinstance(action, (MessageAction, FileAction)):
            return self._display(event, instance, reschedule, allow_defer, skip_pre_action)
        if isinstance(action, CommandAction):
            return self._command(event, action, instance, reschedule)
        if isinstance(action, EmailAction):
            return self._email(event, instance, reschedule, allow_defer)
        raise TypeError(f"Unknown alarm action {action!r}")

    def _display(
        self,
        event: Event,
        instance: AlarmInstance,
        reschedule: bool,
        allow_defer: bool,
        skip_pre_action: bool,
    ) -> Outcome:
        window = self.display.find_window(event.id)
        if window is None and not skip_pre_action and event.pre_action and self.runner.authorised:
            logger.info("Pre-display command for event %s: %s", event.id, event.pre_action)
            flags = ProcFlags.PRE_ACTION
            if reschedule:
                flags |= ProcFlags.RESCHEDULE
            if allow_defer:
                flags |= ProcFlags.ALLOW_DEFER
            if self.runner.run(event.pre_action, event, instance, flags) is not None:
                # The message is shown once the command completes.
                return Outcome.PENDING
            # The command failed to start: show the message regardless.

        if (
            window is None
            or (not window.has_defer and not instance.repeat_at_login)
            or (window.is_reminder and not instance.is_reminder)
        ):
            # Replace a login-alarm window without a Defer button, or a
            # reminder window which now needs to show the main message.
            if window is not None:
                window.recreating = True
                window.close()
            options = DisplayOptions(reschedule=reschedule, allow_defer=allow_defer)
            self.display.show_message(event, instance, options, on_closed=self._window_closed)
        else:
            window.repeat(instance)
        if reschedule:
            self.reschedule(event, instance)
        return Outcome.DONE

    def _window_closed(self, window) -> None:
        self.completed(window.event)

    def _command(self, event: Event, action: CommandAction, instance: AlarmInstance, reschedule: bool) -> Outcome:
        flags = ProcFlags.IN_TERMINAL if action.in_terminal else ProcFlags.NONE
        record: Optional[ProcessRecord] = None
        failed = False
        if action.script:
            logger.info("Command alarm %s: (script)", event.id)
            try:
                script = self.runner.create_temp_script(action.command)
            except OSError as exc:
                logger.error("Unable to create a temporary script file: %s", exc)
                self.display.show_errors(event, instance.when, [TEMP_SCRIPT_ERROR])
                failed = True
            else:
                record = self.runner.run(script, event, instance, flags | ProcFlags.TEMP_FILE, action.log_file)
        else:
            logger.info("Command alarm %s: %s", event.id, action.command)
            record = self.runner.run(action.command, event, instance, flags, action.log_file)
        if reschedule:
            # Scheduling moves on whatever the command's eventual exit status.
            self.reschedule(event, instance)
        if failed or record is None:
            return Outcome.FAILED
        return Outcome.DONE

    def _email(self, event: Event, instance: AlarmInstance, reschedule: bool, allow_defer: bool) -> Outcome:
        action = event.action
        logger.info("Email alarm %s to: %s", event.id, ", ".join(action.addresses))
        errors: List[str] = []
        sent = self.mailer.send(event, errors, reschedule or allow_defer)
        if errors:
            # The email may have been sent even though something went wrong.
            if sent:
                logger.warning("Email alarm %s copy error: %s", event.id, errors[-1])
            else:
                logger.error("Email alarm %s failed: %s", event.id, errors[-1])
            self.display.show_errors(event, instance.when, errors)
        if reschedule:
            self.reschedule(event, instance)
        if not sent:
            return Outcome.FAILED
        self.completed(event)
        return Outcome.DONE
