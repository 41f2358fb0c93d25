import logging
import logging.handlers
import os
from dataclasses import dataclass
from datetime import time
from pathlib import Path
from typing import Callable, Optional, TypeVar

from dotenv import load_dotenv

from time_utils import parse_clock_time, resolve_timezone

T = TypeVar("T")

_TRUE_VALUES = {"1", "true", "yes", "y", "on"}


def _get_env_bool(name: str, default: bool = False) -> bool:
    val = os.getenv(name)
    if val is None:
        return default
    return val.strip().lower() in _TRUE_VALUES


def _get_env_converted(name: str, default: T, convert: Callable[[str], T], expected: str) -> T:
    val = os.getenv(name)
    if val is None or val == "":
        return default
    try:
        return convert(val)
    except ValueError as exc:
        raise ValueError(f"Environment variable {name} must be {expected}") from exc


def _get_env_int(name: str, default: int) -> int:
    return _get_env_converted(name, default, int, "an integer")


def _get_env_float(name: str, default: float) -> float:
    return _get_env_converted(name, default, float, "a number")


def _get_env_time(name: str, default: time) -> time:
    return _get_env_converted(name, default, parse_clock_time, "a time in HH:MM format")


@dataclass
class Config:
    calendar_path: Path
    archive_path: Path
    daemon_check_interval: int
    archived_keep_days: int
    start_of_day: time
    xterm_command: str
    shell: str
    commands_authorised: bool
    timezone_name: Optional[str]
    smtp_host: str
    smtp_port: int
    smtp_user: Optional[str]
    smtp_password: Optional[str]
    smtp_timeout: float
    email_from: Optional[str]
    email_bcc: Optional[str]
    default_bg_color: str
    default_fg_color: str
    debug: bool
    log_level: str
    log_dir: Path

    @property
    def timezone(self):
        return resolve_timezone(self.timezone_name)


DEFAULT_XTERM_COMMAND = "xterm -T %t -e %C"


def load_config(env_path: Optional[Path] = None) -> Config:
    if env_path is None:
        env_path = Path(".env")
    if env_path.exists():
        load_dotenv(env_path)

    calendar_path = Path(os.getenv("ALARM_CALENDAR_PATH", "data/calendar.json"))
    archive_path = Path(os.getenv("ALARM_ARCHIVE_PATH", "data/archive.json"))
    daemon_check_interval = _get_env_int("ALARM_DAEMON_CHECK_INTERVAL", 60)
    if daemon_check_interval <= 0:
        raise ValueError("Environment variable ALARM_DAEMON_CHECK_INTERVAL must be positive")
    archived_keep_days = _get_env_int("ALARM_ARCHIVED_KEEP_DAYS", 7)
    if archived_keep_days < -1:
        raise ValueError("Environment variable ALARM_ARCHIVED_KEEP_DAYS must be -1 or more")
    start_of_day = _get_env_time("ALARM_START_OF_DAY", time(0, 0))
    xterm_command = os.getenv("ALARM_XTERM_COMMAND", DEFAULT_XTERM_COMMAND)
    shell = os.getenv("ALARM_SHELL") or os.getenv("SHELL") or "/bin/sh"
    commands_authorised = _get_env_bool("ALARM_ALLOW_COMMANDS", True)
    timezone_name = os.getenv("ALARM_TIMEZONE") or None
    smtp_host = os.getenv("ALARM_SMTP_HOST", "localhost")
    smtp_port = _get_env_int("ALARM_SMTP_PORT", 25)
    smtp_user = os.getenv("ALARM_SMTP_USER") or None
    smtp_password = os.getenv("ALARM_SMTP_PASSWORD") or None
    smtp_timeout = _get_env_float("ALARM_SMTP_TIMEOUT", 30.0)
    email_from = os.getenv("ALARM_EMAIL_FROM") or None
    email_bcc = os.getenv("ALARM_EMAIL_BCC") or None
    default_bg_color = os.getenv("ALARM_DEFAULT_BG", "#ffffff")
    default_fg_color = os.getenv("ALARM_DEFAULT_FG", "#000000")
    debug = _get_env_bool("DEBUG", False)
    log_level = os.getenv("LOG_LEVEL", "DEBUG" if debug else "INFO").upper()
    log_dir = Path(os.getenv("ALARM_LOG_DIR", "logs"))

    return Config(
        calendar_path=calendar_path,
        archive_path=archive_path,
        daemon_check_interval=daemon_check_interval,
        archived_keep_days=archived_keep_days,
        start_of_day=start_of_day,
        xterm_command=xterm_command,
        shell=shell,
        commands_authorised=commands_authorised,
        timezone_name=timezone_name,
        smtp_host=smtp_host,
        smtp_port=smtp_port,
        smtp_user=smtp_user,
        smtp_password=smtp_password,
        smtp_timeout=smtp_timeout,
        email_from=email_from,
        email_bcc=email_bcc,
        default_bg_color=default_bg_color,
        default_fg_color=default_fg_color,
        debug=debug,
        log_level=log_level,
        log_dir=log_dir,
    )


def setup_logging(log_level: str = "INFO", log_dir: Path = Path("logs")) -> None:
    log_dir.mkdir(parents=True, exist_ok=True)

    log_path = log_dir / "alarm-daemon.log"
    formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    file_handler = logging.handlers.RotatingFileHandler(
        log_path, maxBytes=1_000_000, backupCount=3, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)

    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        handlers=[file_handler, console_handler],
    )
