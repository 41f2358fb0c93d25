from datetime import time

import pytest

from alarm_daemon import USAGE_HINT, build_arg_parser, main
from config import load_config


def test_trigger_options_are_mutually_exclusive(capsys):
    assert main(["--handle-event", "al_a", "--cancel-event", "al_b"]) == 1
    err = capsys.readouterr().err
    assert "--handle-event, --trigger-event, --cancel-event mutually exclusive" in err
    assert USAGE_HINT in err


def test_run_rejects_alarm_options(capsys):
    assert main(["--run", "Hello"]) == 1
    assert "--run incompatible with other options" in capsys.readouterr().err


def test_nothing_to_do(capsys):
    assert main([]) == 1
    assert "No message, file, command or email specified" in capsys.readouterr().err


def test_parser_destinations():
    args = build_arg_parser().parse_args(
        ["-e", "ls", "-m", "a@example.com", "-m", "b@example.com", "--colour", "red", "Hello", "there"]
    )
    assert args.exec_command == "ls"
    assert args.mail == ["a@example.com", "b@example.com"]
    assert args.color == "red"
    assert args.message == ["Hello", "there"]


def test_load_config_from_environment(monkeypatch, tmp_path):
    monkeypatch.setenv("ALARM_DAEMON_CHECK_INTERVAL", "30")
    monkeypatch.setenv("ALARM_START_OF_DAY", "07:15")
    monkeypatch.setenv("ALARM_ALLOW_COMMANDS", "no")
    monkeypatch.setenv("ALARM_CALENDAR_PATH", str(tmp_path / "cal.json"))
    config = load_config(tmp_path / "missing.env")
    assert config.daemon_check_interval == 30
    assert config.start_of_day == time(7, 15)
    assert not config.commands_authorised
    assert config.calendar_path == tmp_path / "cal.json"


def test_invalid_numeric_setting(monkeypatch, tmp_path):
    monkeypatch.setenv("ALARM_ARCHIVED_KEEP_DAYS", "many")
    with pytest.raises(ValueError):
        load_config(tmp_path / "missing.env")
