import io
import os
from datetime import timedelta

from alarms.display import ConsoleDisplay
from alarms.dispatcher import ExecutionDispatcher, Outcome
from alarms.event import AlarmInstance, AlarmRole, CommandAction, EmailAction
from alarms.process import TEMP_SCRIPT_ERROR, ProcessRunner

from conftest import FakeMailer, make_event


class Recorder:
    def __init__(self):
        self.rescheduled = []
        self.completed = []

    def reschedule(self, event, instance):
        self.rescheduled.append((event.id, instance.role))

    def complete(self, event):
        self.completed.append(event.id)


def _dispatcher(display, mailer=None, runner=None):
    recorder = Recorder()
    runner = runner or ProcessRunner(display, authorised=False)
    dispatcher = ExecutionDispatcher(display, mailer or FakeMailer(), runner, recorder.reschedule, recorder.complete)
    return dispatcher, recorder


def _main(event):
    return AlarmInstance(AlarmRole.MAIN, event.start)


def test_message_displayed_and_rescheduled(display, output):
    dispatcher, recorder = _dispatcher(display)
    event = make_event(text="Stand up")
    assert dispatcher.execute(event, _main(event)) is Outcome.DONE
    assert "Stand up" in output.getvalue()
    assert event.archive
    assert recorder.rescheduled == [(event.id, AlarmRole.MAIN)]
    # The console display acknowledges at once, which completes the alarm.
    assert recorder.completed == [event.id]


def test_disabled_event_only_rescheduled(display, output):
    dispatcher, recorder = _dispatcher(display)
    event = make_event(enabled=False)
    assert dispatcher.execute(event, _main(event)) is Outcome.DISABLED
    assert output.getvalue() == ""
    assert recorder.rescheduled == [(event.id, AlarmRole.MAIN)]
    assert not event.archive


def test_open_window_is_repeated():
    display = ConsoleDisplay(io.StringIO(), auto_acknowledge=False)
    dispatcher, recorder = _dispatcher(display)
    event = make_event()
    dispatcher.execute(event, _main(event), reschedule=False)
    window = display.find_window(event.id)
    dispatcher.execute(event, _main(event), reschedule=False)
    assert display.find_window(event.id) is window
    assert window.alert_count == 2
    assert display.instance_count() == 1


def test_reminder_window_replaced_by_main_alarm():
    display = ConsoleDisplay(io.StringIO(), auto_acknowledge=False)
    dispatcher, recorder = _dispatcher(display)
    event = make_event()
    reminder = AlarmInstance(AlarmRole.REMINDER, event.start - timedelta(minutes=5))
    dispatcher.execute(event, reminder, reschedule=False)
    first = display.find_window(event.id)
    dispatcher.execute(event, _main(event), reschedule=False)
    second = display.find_window(event.id)
    assert second is not first
    assert first.closed
    assert not second.is_reminder
    # Replacing a window does not complete the alarm.
    assert recorder.completed == []


def test_command_not_started_still_reschedules(display, output):
    dispatcher, recorder = _dispatcher(display)
    event = make_event(action=CommandAction("ls"))
    assert dispatcher.execute(event, _main(event)) is Outcome.FAILED
    assert recorder.rescheduled == [(event.id, AlarmRole.MAIN)]
    assert "shell access not authorized" in output.getvalue()


def test_script_file_failure_reported(display, output, tmp_path):
    runner = ProcessRunner(display, temp_dir=str(tmp_path / "missing"))
    dispatcher, recorder = _dispatcher(display, runner=runner)
    event = make_event(action=CommandAction("echo hi", script=True))
    assert dispatcher.execute(event, _main(event), reschedule=False) is Outcome.FAILED
    assert TEMP_SCRIPT_ERROR in output.getvalue()


def test_email_sent_completes_alarm(display):
    mailer = FakeMailer()
    dispatcher, recorder = _dispatcher(display, mailer)
    event = make_event(action=EmailAction(("a@example.com",), "Subject", "Body"))
    assert dispatcher.execute(event, _main(event), reschedule=False, allow_defer=False) is Outcome.DONE
    assert mailer.calls == [(event.id, False)]
    assert recorder.completed == [event.id]
    assert recorder.rescheduled == []


def test_email_failure_shows_errors(display, output):
    mailer = FakeMailer(sent=False, errors=["Failed to send email", "connection refused"])
    dispatcher, recorder = _dispatcher(display, mailer)
    event = make_event(action=EmailAction(("a@example.com",), "Subject", "Body"))
    assert dispatcher.execute(event, _main(event)) is Outcome.FAILED
    assert "connection refused" in output.getvalue()
    assert recorder.completed == []
    assert recorder.rescheduled == [(event.id, AlarmRole.MAIN)]


def test_pre_action_defers_display(display, output, tmp_path):
    runner = ProcessRunner(display, shell="/bin/sh", temp_dir=str(tmp_path))
    dispatcher, recorder = _dispatcher(display, runner=runner)
    event = make_event(text="After pre-action", pre_action="true")
    assert dispatcher.execute(event, _main(event)) is Outcome.PENDING
    assert "After pre-action" not in output.getvalue()
    assert recorder.rescheduled == []
    for record in runner.records():
        record.wait(10)


def test_terminal_script_command_runs_and_is_removed(display, tmp_path):
    marker = tmp_path / "ran"
    runner = ProcessRunner(display, xterm_command="/bin/sh %C", temp_dir=str(tmp_path))
    dispatcher, recorder = _dispatcher(display, runner=runner)
    event = make_event(action=CommandAction(f'test -x "$0" && touch {marker}', script=True, in_terminal=True))
    assert dispatcher.execute(event, _main(event)) is Outcome.DONE
    [record] = runner.records()
    [script] = record.temp_files
    assert record.command == f"/bin/sh {script}"
    assert record.wait(10).exited_normally
    assert marker.exists()
    assert not os.path.exists(script)
    assert recorder.rescheduled == [(event.id, AlarmRole.MAIN)]
