import argparse
import logging
import signal
import sys
from typing import List, Optional

from config import Config, load_config, setup_logging
from alarms.daemon import AlarmDaemon
from alarms.dispatch_loop import EventFunction
from alarms.display import ConsoleDisplay
from alarms.mailer import SmtpMailer
from alarms.manager import AlarmManager, FatalError
from alarms.parser import UsageError
from alarms.request_router import RequestResult, RequestRouter
from alarms.storage import AlarmCalendar

logger = logging.getLogger("alarm_daemon")

USAGE_HINT = "Use --help to get a list of available command line options."
# Longest wait for running commands after a one-shot request.
ONE_SHOT_TIMEOUT = 300.0


class AlarmRuntime:
    def __init__(self, config: Config, run_daemon: bool = False):
        self.config = config
        self.calendar = AlarmCalendar(config.calendar_path, config.archive_path)
        self.display = ConsoleDisplay()
        self.mailer = SmtpMailer(
            host=config.smtp_host,
            port=config.smtp_port,
            user=config.smtp_user,
            password=config.smtp_password,
            sender=config.email_from,
            bcc_address=config.email_bcc,
            timeout=config.smtp_timeout,
        )
        self.manager = AlarmManager(
            self.calendar,
            self.display,
            self.mailer,
            shell=config.shell,
            xterm_command=config.xterm_command,
            commands_authorised=config.commands_authorised,
            check_interval=config.daemon_check_interval,
            archived_keep_days=config.archived_keep_days,
            start_of_day=config.start_of_day,
            timezone=config.timezone,
        )
        self.daemon: Optional[AlarmDaemon] = None
        if run_daemon:
            self.daemon = AlarmDaemon(
                self.calendar,
                notify=self.manager.notify_due,
                check_interval=config.daemon_check_interval,
            )
            self.manager.attach_daemon(self.daemon)
        self.router = RequestRouter(self.manager, config.default_bg_color, config.default_fg_color)

    def start(self) -> None:
        self.manager.start()

    def request_quit(self, force: bool = False) -> bool:
        return self.manager.quit_if(0, force=force)

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self.manager.terminated.wait(timeout)

    def shutdown(self) -> None:
        if not self.manager.terminated.is_set():
            self.manager.quit_if(self.manager.exit_code, force=True)
        self.manager.stop()


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="alarm-daemon",
        description="Personal alarm scheduler: schedule, trigger and cancel alarms.",
    )
    parser.add_argument("message", nargs="*", help="Message text to display")

    trigger = parser.add_argument_group("existing alarms")
    trigger.add_argument("--handle-event", metavar="ID", help="Trigger or cancel the event with the given ID")
    trigger.add_argument("--trigger-event", metavar="ID", help="Trigger the event with the given ID now")
    trigger.add_argument("--cancel-event", metavar="ID", help="Cancel the event with the given ID")
    trigger.add_argument("--run", action="store_true", help="Run as a daemon, showing alarms when due")

    action = parser.add_argument_group("alarm action")
    action.add_argument("-f", "--file", metavar="URL", help="File to display")
    action.add_argument("-e", "--exec", dest="exec_command", metavar="COMMAND", help="Command to execute")
    action.add_argument("--exec-script", dest="exec_script", metavar="SCRIPT", help="Shell script to execute")
    action.add_argument("-m", "--mail", action="append", metavar="ADDRESS", help="Send an email to the address")
    action.add_argument("-s", "--subject", help="Email subject line")
    action.add_argument("-i", "--attach", action="append", metavar="URL", help="Attach file to email")
    action.add_argument("--from-id", metavar="ID", help="Identity to use as sender of email")
    action.add_argument("--bcc", action="store_true", help="Blind copy email to self")

    timing = parser.add_argument_group("alarm timing")
    timing.add_argument("-t", "--time", metavar="TIME", help="Trigger alarm at time [[[yyyy-]mm-]dd-]hh:mm [TZ] or date")
    timing.add_argument("--recurrence", metavar="SPEC", help="Specify alarm recurrence using iCalendar syntax")
    timing.add_argument("--interval", metavar="PERIOD", help="Interval between alarm repetitions")
    timing.add_argument("--repeat", metavar="COUNT", help="Number of times to repeat alarm (including initial occasion)")
    timing.add_argument("--until", metavar="TIME", help="Repeat until time [[[yyyy-]mm-]dd-]hh:mm [TZ] or date")
    timing.add_argument("-l", "--late-cancel", metavar="PERIOD", help="Cancel alarm if more than the period late")
    timing.add_argument("--auto-close", action="store_true", help="Auto-close alarm window after --late-cancel period")
    timing.add_argument("-L", "--login", action="store_true", help="Repeat alarm at every login")
    timing.add_argument("--reminder", metavar="PERIOD", help="Reminder in advance of or after alarm")
    timing.add_argument("--reminder-once", metavar="PERIOD", help="Reminder once, before first alarm recurrence")

    look = parser.add_argument_group("alarm presentation")
    look.add_argument("-a", "--ack-confirm", action="store_true", help="Prompt for confirmation when alarm is acknowledged")
    look.add_argument("-b", "--beep", action="store_true", help="Beep when message is displayed")
    look.add_argument("--speak", action="store_true", help="Speak the message when it is displayed")
    look.add_argument("-p", "--play", metavar="URL", help="Audio file to play once")
    look.add_argument("-P", "--play-repeat", metavar="URL", help="Audio file to play repeatedly")
    look.add_argument("--volume", metavar="PERCENT", help="Volume to play audio file")
    look.add_argument("-c", "--color", "--colour", dest="color", help="Message background color (name or hex 0xRRGGBB)")
    look.add_argument("-C", "--colorfg", "--colourfg", dest="colorfg", help="Message foreground color (name or hex 0xRRGGBB)")
    look.add_argument("-k", "--korganizer", action="store_true", help="Show alarm as an event in the organizer")
    look.add_argument("-d", "--disable", action="store_true", help="Disable the alarm")
    return parser


def _trigger_request(args) -> Optional[tuple]:
    requests = [
        (EventFunction.HANDLE, args.handle_event),
        (EventFunction.TRIGGER, args.trigger_event),
        (EventFunction.CANCEL, args.cancel_event),
    ]
    given = [(function, event_id) for function, event_id in requests if event_id]
    if len(given) > 1:
        raise UsageError("--handle-event, --trigger-event, --cancel-event mutually exclusive")
    if not given:
        return None
    if _has_new_alarm_options(args):
        raise UsageError("Alarm options incompatible with --handle-event, --trigger-event, --cancel-event")
    return given[0]


def _has_new_alarm_options(args) -> bool:
    names = (
        "message", "file", "exec_command", "exec_script", "mail", "subject", "attach", "from_id", "bcc",
        "time", "recurrence", "interval", "repeat", "until", "late_cancel", "auto_close", "login",
        "reminder", "reminder_once", "ack_confirm", "beep", "speak", "play", "play_repeat", "volume",
        "color", "colorfg", "korganizer", "disable",
    )
    return any(getattr(args, name, None) for name in names)


def run_daemon(runtime: AlarmRuntime) -> int:
    def request_shutdown(signum, frame) -> None:  # pragma: no cover - signal handler
        logger.info("Shutting down (signal %s)", signum)
        runtime.request_quit()

    signal.signal(signal.SIGINT, request_shutdown)
    signal.signal(signal.SIGTERM, request_shutdown)
    runtime.start()
    logger.info("Alarm daemon running (check interval %ss)", runtime.config.daemon_check_interval)
    try:
        while not runtime.wait(0.5):
            pass
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    finally:
        runtime.shutdown()
    return runtime.manager.exit_code


def run_once(runtime: AlarmRuntime, args, trigger: Optional[tuple]) -> int:
    runtime.start()
    try:
        if trigger is not None:
            result: RequestResult = runtime.router.handle_trigger(*trigger)
        else:
            result = runtime.router.handle_new_alarm(args)
        if result.response_text:
            print(result.response_text)
        runtime.request_quit()
        if not runtime.wait(ONE_SHOT_TIMEOUT):
            logger.warning("Gave up waiting for alarm actions to finish")
    finally:
        runtime.shutdown()
    if runtime.manager.exit_code:
        return runtime.manager.exit_code
    return 0 if result.handled else 1


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    try:
        trigger = _trigger_request(args)
        if args.run and (trigger is not None or _has_new_alarm_options(args)):
            raise UsageError("--run incompatible with other options")
        if trigger is None and not args.run and not _has_new_alarm_options(args):
            raise UsageError("No message, file, command or email specified")
    except UsageError as exc:
        print(f"{parser.prog}: {exc}", file=sys.stderr)
        print(USAGE_HINT, file=sys.stderr)
        return 1

    config = load_config()
    setup_logging(config.log_level, config.log_dir)
    logger.info("Starting alarm daemon")
    runtime = AlarmRuntime(config, run_daemon=args.run)
    try:
        if args.run:
            return run_daemon(runtime)
        return run_once(runtime, args, trigger)
    except UsageError as exc:
        print(f"{parser.prog}: {exc}", file=sys.stderr)
        print(USAGE_HINT, file=sys.stderr)
        return 1
    except FatalError as exc:
        logger.critical("%s", exc)
        print(f"{parser.prog}: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
