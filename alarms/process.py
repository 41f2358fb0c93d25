from __future__ import annotations

import copy
import logging
import os
import shlex
import stat
import subprocess
import tempfile
from dataclasses import dataclass
from enum import IntFlag
from functools import partial
from threading import Event as ThreadEvent, Lock, Thread
from typing import Callable, List, Optional, Tuple

from .event import AlarmInstance, Event

logger = logging.getLogger(__name__)

DEFAULT_XTERM_COMMAND = "xterm -T %t -e %C"
TERMINAL_TITLE = "Alarm"
# Appended to terminal commands so that the window stays open.
KEEP_OPEN_SLEEP = "sleep 86400"
TEMP_SCRIPT_ERROR = "Error creating temporary script file"
_READ_CHUNK = 4096


class ProcFlags(IntFlag):
    NONE = 0
    PRE_ACTION = 1
    POST_ACTION = 2
    RESCHEDULE = 4
    ALLOW_DEFER = 8
    IN_TERMINAL = 16
    TEMP_FILE = 32


@dataclass
class ProcessResult:
    exited_normally: bool
    message: str = ""
    returncode: Optional[int] = None


class LogPipe:
    """A ``cat >> file`` process which appends a command's output to a log file."""

    def __init__(self, path: str, shell: str = "/bin/sh"):
        self.path = path
        self.shell = shell
        self._process: Optional[subprocess.Popen] = None
        self._lock = Lock()
        self.closed = ThreadEvent()

    def start(self, heading: str) -> None:
        self._process = subprocess.Popen(
            [self.shell, "-c", f"cat >>{shlex.quote(self.path)}"],
            stdin=subprocess.PIPE,
        )
        self.write(heading.encode("utf-8"))

    def write(self, data: bytes) -> None:
        with self._lock:
            if self._process is None or self._process.stdin is None or self._process.stdin.closed:
                return
            try:
                self._process.stdin.write(data)
                self._process.stdin.flush()
            except OSError as exc:
                logger.warning("Failed to write to log file %s: %s", self.path, exc)

    def close(self, on_closed: Optional[Callable[["LogPipe"], None]] = None) -> None:
        """Close the pipe's input; ``on_closed`` runs once the process has exited."""
        with self._lock:
            process = self._process
            if process is not None and process.stdin is not None and not process.stdin.closed:
                try:
                    process.stdin.close()
                except OSError:
                    logger.debug("Log pipe for %s already broken", self.path)
        if process is None:
            self._closed(on_closed)
            return
        Thread(target=self._reap, args=(process, on_closed), name="alarm-log-reaper", daemon=True).start()

    def _reap(self, process: subprocess.Popen, on_closed) -> None:
        process.wait()
        self._closed(on_closed)

    def _closed(self, on_closed) -> None:
        self.closed.set()
        if on_closed:
            try:
                on_closed(self)
            except Exception:  # pragma: no cover - callback safety
                logger.error("Log pipe close callback failed", exc_info=True)


class ProcessRecord:
    """One launched command, together with everything it owns."""

    def __init__(
        self,
        command: str,
        event: Event,
        instance: Optional[AlarmInstance],
        flags: ProcFlags,
    ):
        self.command = command
        self.event = copy.deepcopy(event)
        self.instance = instance
        self.flags = flags
        self.process: Optional[subprocess.Popen] = None
        self.log: Optional[LogPipe] = None
        self.temp_files: List[str] = []
        self.message_box_parent = None
        self.result: Optional[ProcessResult] = None
        self._done = ThreadEvent()
        self._released = False

    @property
    def pre_action(self) -> bool:
        return bool(self.flags & ProcFlags.PRE_ACTION)

    @property
    def post_action(self) -> bool:
        return bool(self.flags & ProcFlags.POST_ACTION)

    @property
    def reschedule(self) -> bool:
        return bool(self.flags & ProcFlags.RESCHEDULE)

    @property
    def allow_defer(self) -> bool:
        return bool(self.flags & ProcFlags.ALLOW_DEFER)

    @property
    def temp_file(self) -> bool:
        return bool(self.flags & ProcFlags.TEMP_FILE)

    @property
    def done(self) -> bool:
        return self._done.is_set()

    def wait(self, timeout: Optional[float] = None) -> Optional[ProcessResult]:
        self._done.wait(timeout)
        return self.result

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        for path in self.temp_files:
            try:
                os.remove(path)
            except FileNotFoundError:
                pass
            except OSError as exc:
                logger.warning("Failed to delete temporary file %s: %s", path, exc)
        self._done.set()


class ProcessRunner:
    """Launches alarm commands and tracks them until they exit.

    Each command is watched by its own thread. ``on_exit`` is called from
    that thread with the record and its result, after error reporting and
    before the record's temporary files are deleted.
    """

    def __init__(
        self,
        display,
        shell: str = "/bin/sh",
        xterm_command: str = DEFAULT_XTERM_COMMAND,
        authorised: bool = True,
        on_exit: Optional[Callable[[ProcessRecord, ProcessResult], None]] = None,
        temp_dir: Optional[str] = None,
    ):
        self.display = display
        self.shell = shell
        self.xterm_command = xterm_command
        self.authorised = authorised
        self.on_exit = on_exit
        self.temp_dir = temp_dir
        self._records: List[ProcessRecord] = []
        self._lock = Lock()

    def active_count(self) -> int:
        """Number of commands which have not yet exited."""
        with self._lock:
            return sum(1 for record in self._records if record.result is None)

    def records(self) -> List[ProcessRecord]:
        with self._lock:
            return list(self._records)

    def run(
        self,
        command: str,
        event: Event,
        instance: Optional[AlarmInstance] = None,
        flags: ProcFlags = ProcFlags.NONE,
        log_file: Optional[str] = None,
    ) -> Optional[ProcessRecord]:
        """Start ``command``; returns None if it could not be started."""
        record = ProcessRecord(command, event, instance, flags)
        if flags & ProcFlags.TEMP_FILE:
            record.temp_files.append(command)
        with self._lock:
            self._records.append(record)

        if not self.authorised:
            self._report(record, "Failed to execute command (shell access not authorized)")
            self._release(record)
            return None

        capture = not flags & ProcFlags.IN_TERMINAL
        if capture:
            cmd = command
        else:
            try:
                cmd, terminal_file = self.terminal_command(command, flags)
            except OSError as exc:
                logger.error("Unable to create a temporary script file: %s", exc)
                self.display.show_errors(record.event, _when(instance), [TEMP_SCRIPT_ERROR])
                self._release(record)
                return None
            if terminal_file:
                record.temp_files.append(terminal_file)
        record.command = cmd

        try:
            record.process = subprocess.Popen(
                [self.shell, "-c", cmd],
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE if capture else subprocess.DEVNULL,
                stderr=subprocess.STDOUT if capture else subprocess.DEVNULL,
            )
        except OSError as exc:
            logger.error("Command failed to start: %s (%s)", cmd, exc)
            self._report(record, f"Failed to execute command: {exc}")
            self._release(record)
            return None

        if capture and log_file:
            record.log = LogPipe(log_file, self.shell)
            try:
                record.log.start(log_heading(instance))
            except OSError as exc:
                logger.error("Failed to start logging to %s: %s", log_file, exc)
                record.log = None

        logger.info("Started command for event %s: %s", event.id, cmd)
        Thread(target=self._watch, args=(record,), name="alarm-command", daemon=True).start()
        return record

    def command_message(self, record: ProcessRecord, parent) -> None:
        """Note that an informational message box is open for ``record``."""
        record.message_box_parent = parent

    def create_temp_script(self, command: str, insert_shell: bool = False) -> str:
        fd, path = tempfile.mkstemp(prefix="alarm-", suffix=".sh", dir=self.temp_dir)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                if insert_shell:
                    f.write(f"#!{self.shell}\n")
                f.write(command)
            os.chmod(path, stat.S_IRUSR | stat.S_IWUSR | stat.S_IXUSR)
        except OSError:
            try:
                os.remove(path)
            except OSError:
                pass
            raise
        return path

    def terminal_command(self, command: str, flags: ProcFlags) -> Tuple[str, Optional[str]]:
        """Wrap ``command`` in the terminal template.

        Markers: %C script file, %W script file ending with a sleep,
        %w command ending with a sleep, %c command. With none of them the
        quoted command is appended.
        """
        cmd = self.xterm_command.replace("%t", TERMINAL_TITLE)
        temp_file = None
        if "%C" in cmd:
            if flags & ProcFlags.TEMP_FILE:
                # The command already runs a temporary file.
                cmd = cmd.replace("%C", command)
            else:
                temp_file = self.create_temp_script(command, insert_shell=True)
                cmd = cmd.replace("%C", temp_file)
        elif "%W" in cmd:
            temp_file = self.create_temp_script(f"{command}\n{KEEP_OPEN_SLEEP}\n", insert_shell=True)
            cmd = cmd.replace("%W", temp_file)
        elif "%w" in cmd:
            cmd = cmd.replace("%w", shlex.quote(f"{command}; {KEEP_OPEN_SLEEP}"))
        elif "%c" in cmd:
            cmd = cmd.replace("%c", shlex.quote(command))
        else:
            separator = "" if cmd.endswith(" ") else " "
            cmd = f"{cmd}{separator}{shlex.quote(command)}"
        return cmd, temp_file

    def _watch(self, record: ProcessRecord) -> None:
        process = record.process
        if process.stdout is not None:
            for chunk in iter(partial(process.stdout.read1, _READ_CHUNK), b""):
                if record.log is not None:
                    record.log.write(chunk)
                else:
                    logger.debug("Command output (event %s): %r", record.event.id, chunk)
            process.stdout.close()
        returncode = process.wait()
        if returncode == 0:
            result = ProcessResult(True, "", returncode)
        elif returncode < 0:
            result = ProcessResult(False, f"Command was killed by signal {-returncode}", returncode)
        else:
            result = ProcessResult(False, f"Command exited with code {returncode}", returncode)
        self._finish(record, result)

    def _finish(self, record: ProcessRecord, result: ProcessResult) -> None:
        record.result = result
        if record.log is not None:
            record.log.close(self._log_closed)
        if not result.exited_normally:
            logger.warning("Command for event %s (%s): %s", record.event.id, record.event.text, result.message)
            if record.message_box_parent is not None:
                message = result.message
                if not record.temp_file:
                    message = f"{message}\n{record.command}"
                self.display.replace_dialog(record.message_box_parent, message)
            else:
                self._report(record, result.message)
        if self.on_exit:
            try:
                self.on_exit(record, result)
            except Exception:
                logger.error("Command exit handler failed for event %s", record.event.id, exc_info=True)
        self._release(record)

    @staticmethod
    def _log_closed(log: LogPipe) -> None:
        logger.debug("Log pipe for %s closed", log.path)

    def _report(self, record: ProcessRecord, message: str) -> None:
        if record.result is None:
            record.result = ProcessResult(False, message)
        self.display.show_errors(record.event, _when(record.instance), command_error_messages(record, message))

    def _release(self, record: ProcessRecord) -> None:
        with self._lock:
            if record in self._records:
                self._records.remove(record)
        record.release()


def command_error_messages(record: ProcessRecord, message: str) -> List[str]:
    messages: List[str] = []
    if record.pre_action:
        messages.append("Pre-alarm action:")
    elif record.post_action:
        messages.append("Post-alarm action:")
    messages.append(message)
    if not record.temp_file:
        messages.append(record.command)
    return messages


def log_heading(instance: Optional[AlarmInstance]) -> str:
    if instance is not None and instance.when is not None:
        stamp = instance.when.strftime("%Y-%m-%d %H:%M %Z").strip()
        return f"\n******* Alarm {stamp} *******\n"
    return "\n******* Alarm *******\n"


def _when(instance: Optional[AlarmInstance]):
    return instance.when if instance is not None else None
