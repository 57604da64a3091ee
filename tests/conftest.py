"""Shared fixtures for chronsync tests."""

import json
import sys
from pathlib import Path
from typing import Any

import pytest

from chronsync.config import settings
from chronsync.cron.types import TaskDefinition


def make_task(
    name: str = "task",
    schedule: str = "* * * * * *",
    command: str = sys.executable,
    args: list[str] | None = None,
    **extra: Any,
) -> TaskDefinition:
    """Build a validated TaskDefinition."""
    return TaskDefinition(
        name=name,
        cron_schedule=schedule,
        command=command,
        args=args if args is not None else ["-c", "pass"],
        **extra,
    )


@pytest.fixture
def write_config(tmp_path: Path):
    """Write a config file from a list of task dicts (or raw text)."""
    path = tmp_path / "config.json"

    def _write(tasks: list[dict[str, Any]] | str) -> Path:
        if isinstance(tasks, str):
            path.write_text(tasks)
        else:
            path.write_text(json.dumps({"tasks": tasks}))
        return path

    return _write


@pytest.fixture(autouse=True)
def state_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Keep PID, log and lock files inside the test's temporary directory."""
    path = tmp_path / "state"
    monkeypatch.setattr(settings, "state_dir", path)
    return path
