"""Tests for the command-line interface."""

import json
import signal
import subprocess
import sys
import threading
from unittest.mock import patch

import pytest
from rich.console import Console

from chronsync.cli import build_parser, main
from chronsync.config import settings


def run_cli(*argv: str) -> int:
    with pytest.raises(SystemExit) as exc_info:
        main(list(argv))
    return exc_info.value.code


@pytest.fixture
def valid_config(write_config):
    return write_config([
        {"name": "ping", "cron_schedule": "*/10 * * * * *", "command": sys.executable,
         "args": ["-c", "print('pong')"]},
        {"name": "fail", "cron_schedule": "0 0 0 * * *", "command": sys.executable,
         "args": ["-c", "raise SystemExit(4)"]},
    ])


class TestCheck:
    """Tests for `chronsync check`."""

    def test_valid_config_passes(self, valid_config, capsys) -> None:
        assert run_cli("check", "-c", str(valid_config)) == 0
        assert "Configuration check passed" in capsys.readouterr().out

    def test_invalid_cron_fails(self, write_config, capsys) -> None:
        path = write_config([{"name": "bad", "cron_schedule": "* * * * *", "command": "/bin/true"}])

        assert run_cli("check", "-c", str(path)) == 1
        assert "Validation failed" in capsys.readouterr().out

    def test_malformed_json_fails(self, write_config, capsys) -> None:
        path = write_config("{")

        assert run_cli("check", "-c", str(path)) == 1
        assert "Validation failed" in capsys.readouterr().out

    def test_missing_config_reports_path(self, tmp_path, caplog) -> None:
        missing = tmp_path / "nowhere.json"

        assert run_cli("check", "-c", str(missing)) == 1
        assert "Configuration file not found" in caplog.text
        assert str(missing) in caplog.text

    def test_run_with_missing_config_exits_before_starting(self, tmp_path, caplog) -> None:
        missing = tmp_path / "nowhere.json"

        with patch("chronsync.cli.ChronsyncDaemon") as daemon_cls:
            assert run_cli("run", "-c", str(missing)) == 1

        daemon_cls.assert_not_called()
        assert str(missing) in caplog.text


class TestList:
    """Tests for `chronsync list`."""

    def test_lists_tasks(self, valid_config, capsys, monkeypatch) -> None:
        monkeypatch.setattr("chronsync.cli.console", Console(width=200))

        assert run_cli("list", "-c", str(valid_config)) == 0

        out = capsys.readouterr().out
        assert "ping" in out
        assert "fail" in out
        assert "*/10 * * * * *" in out

    def test_empty_config(self, write_config, capsys) -> None:
        assert run_cli("list", "-c", str(write_config([]))) == 0
        assert "No tasks configured" in capsys.readouterr().out


class TestExec:
    """Tests for `chronsync exec`."""

    def test_runs_task(self, valid_config, capsys) -> None:
        assert run_cli("exec", "ping", "-c", str(valid_config)) == 0

        out = capsys.readouterr().out
        assert "Completed" in out
        assert "pong" in out

    def test_failing_task_exits_nonzero(self, valid_config, capsys) -> None:
        assert run_cli("exec", "fail", "-c", str(valid_config)) == 1
        assert "status: 4" in capsys.readouterr().out

    def test_unknown_task(self, valid_config, caplog) -> None:
        assert run_cli("exec", "missing", "-c", str(valid_config)) == 1
        assert "Task 'missing' not found" in caplog.text


class TestInit:
    """Tests for `chronsync init`."""

    def test_creates_sample(self, tmp_path) -> None:
        path = tmp_path / "config.json"

        assert run_cli("init", "-c", str(path)) == 0

        assert [t["name"] for t in json.loads(path.read_text())["tasks"]] == [
            "sample_ping",
            "sample_cleanup",
        ]

    def test_declining_overwrite_keeps_file(self, tmp_path) -> None:
        path = tmp_path / "config.json"
        path.write_text("mine")

        with patch("chronsync.cli.console.input", return_value="n"):
            assert run_cli("init", "-c", str(path)) == 0

        assert path.read_text() == "mine"

    def test_force_overwrites(self, tmp_path) -> None:
        path = tmp_path / "config.json"
        path.write_text("mine")

        assert run_cli("init", "--force", "-c", str(path)) == 0

        assert "sample_ping" in path.read_text()


class TestParser:
    """Tests for argument parsing."""

    def test_no_command_prints_help(self, capsys) -> None:
        assert run_cli() == 0
        assert "chronsync" in capsys.readouterr().out

    def test_config_option_is_path(self) -> None:
        args = build_parser().parse_args(["run", "-d", "-c", "~/x.json"])

        assert args.daemon
        assert str(args.config_path) == "~/x.json"

    def test_version(self, capsys) -> None:
        assert run_cli("version") == 0
        assert "chronsync" in capsys.readouterr().out


class TestStop:
    """Tests for `chronsync stop`."""

    def test_not_running(self, capsys) -> None:
        assert run_cli("stop") == 0
        assert "not running" in capsys.readouterr().out

    def test_stops_running_daemon(self, state_dir, capsys) -> None:
        process = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(30)"])
        # Reap the child as soon as it exits so it does not linger as a zombie
        threading.Thread(target=process.wait, daemon=True).start()
        try:
            state_dir.mkdir(parents=True, exist_ok=True)
            settings.pid_file.write_text(str(process.pid))

            assert run_cli("stop") == 0

            assert "chronsync stopped" in capsys.readouterr().out
            assert process.wait(timeout=5) == -signal.SIGTERM
            assert not settings.pid_file.exists()
        finally:
            if process.poll() is None:
                process.kill()

    def test_permission_denied(self, capsys) -> None:
        with patch("chronsync.cli.get_service_pid", return_value=4242), \
             patch("chronsync.cli.stop_service", side_effect=PermissionError):
            assert run_cli("stop") == 1

        assert "Permission denied" in capsys.readouterr().out


class TestLog:
    """Tests for `chronsync log`."""

    @pytest.fixture
    def log_file(self, state_dir):
        state_dir.mkdir(parents=True, exist_ok=True)
        settings.log_file.write_text("first\nsecond\nthird\n")
        return settings.log_file

    def test_last_lines(self, log_file, capsys) -> None:
        assert run_cli("log", "-n", "2") == 0

        assert capsys.readouterr().out.split() == ["second", "third"]

    def test_zero_lines_prints_nothing(self, log_file, capsys) -> None:
        assert run_cli("log", "-n", "0") == 0

        assert capsys.readouterr().out == ""

    def test_missing_log(self, capsys) -> None:
        assert run_cli("log") == 0
        assert "No log file found" in capsys.readouterr().out
