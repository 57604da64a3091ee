"""Configuration loading for scheduled tasks.

This module reads the JSON configuration file into a ScheduleSet, with file
locking so the daemon never reads a file half-written by ``chronsync init``.
"""

import hashlib
import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

from filelock import FileLock
from pydantic import ValidationError

from chronsync.cron.errors import ConfigError, ScheduleParseError
from chronsync.cron.types import ConfigFile, ScheduleSet

logger = logging.getLogger(__name__)

SAMPLE_CONFIG: dict[str, Any] = {
    "tasks": [
        {
            "name": "sample_ping",
            "cron_schedule": "*/10 * * * * *",
            "command": "/bin/sh",
            "args": ["-c", "/bin/echo \"[Sample] Check at $(date)\""],
        },
        {
            "name": "sample_cleanup",
            "cron_schedule": "0 0 0 * * *",
            "command": "/usr/bin/find",
            "args": ["/tmp", "-type", "f", "-atime", "+7", "-delete"],
            "timeout": 300,
        },
    ]
}


def _lock_for(path: Path, lock_dir: Path | None = None) -> FileLock:
    """File lock guarding ``path``.

    With ``lock_dir`` the lock lives there, named after the config's full
    path, so a read-only config directory never needs to be writable.
    """
    if lock_dir is None:
        return FileLock(str(path.with_name(path.name + ".lock")))
    digest = hashlib.sha1(str(path.absolute()).encode()).hexdigest()[:12]
    lock_dir.mkdir(parents=True, exist_ok=True)
    return FileLock(str(lock_dir / f"{path.name}.{digest}.lock"))


class ConfigLoader(ABC):
    """Produces a ScheduleSet from a configuration source."""

    @abstractmethod
    def load(self, path: Path) -> ScheduleSet:
        """Load and validate the configuration at ``path``.

        Raises:
            ConfigError: If the source is missing or malformed.
            ScheduleParseError: If a task declares an invalid cron expression.
        """


class JsonConfigLoader(ConfigLoader):
    """Loads the ``{"tasks": [...]}`` JSON configuration file.

    Example:
        loader = JsonConfigLoader(lock_dir=settings.state_dir)
        schedule_set = loader.load(Path("~/.config/chronsync/config.json"))
    """

    def __init__(self, lock_dir: Path | None = None) -> None:
        """Initialize the loader.

        Args:
            lock_dir: Directory for the read lock (default: beside the config).
        """
        self._lock_dir = Path(lock_dir) if lock_dir is not None else None

    def load(self, path: Path) -> ScheduleSet:
        path = Path(path)
        if not path.exists():
            raise ConfigError(f"Configuration file not found: {path}")

        try:
            with _lock_for(path, self._lock_dir):
                content = path.read_text(encoding="utf-8")
        except UnicodeDecodeError as e:
            raise ConfigError(f"Configuration file {path} is not valid UTF-8: {e}") from e
        except OSError as e:
            raise ConfigError(f"Cannot read configuration file {path}: {e}") from e

        return self.parse(content, source=str(path))

    def parse(self, content: str, source: str = "<string>") -> ScheduleSet:
        """Validate configuration text into a ScheduleSet."""
        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            raise ConfigError(f"Invalid JSON in {source}: {e}") from e

        try:
            config = ConfigFile.model_validate(data)
        except ValidationError as e:
            parse_error = _find_schedule_error(e, data)
            if parse_error is not None:
                raise parse_error from e
            raise ConfigError(f"Invalid configuration in {source}: {e}") from e

        schedule_set = ScheduleSet(config.tasks)
        duplicates = schedule_set.duplicate_names()
        if duplicates:
            logger.warning(f"Duplicate task names in {source}: {', '.join(duplicates)}")

        logger.debug(f"Loaded {len(schedule_set)} tasks from {source}")
        return schedule_set


def _find_schedule_error(error: ValidationError, data: Any) -> ScheduleParseError | None:
    """Pull a cron parse failure out of a validation error, naming its task."""
    for detail in error.errors():
        cause = detail.get("ctx", {}).get("error")
        if not isinstance(cause, ScheduleParseError):
            continue

        loc = detail.get("loc", ())
        task_name = None
        if len(loc) >= 2 and loc[0] == "tasks" and isinstance(loc[1], int):
            try:
                task_name = data["tasks"][loc[1]].get("name")
            except (KeyError, IndexError, TypeError, AttributeError):
                task_name = None
            task_name = task_name or f"#{loc[1]}"

        return ScheduleParseError(
            str(cause),
            expression=cause.expression,
            task_name=task_name,
        )
    return None


def write_initial_config(
    path: Path,
    overwrite: bool = False,
    lock_dir: Path | None = None,
) -> Path:
    """Write the sample configuration file.

    Args:
        path: Destination file.
        overwrite: Replace an existing file.
        lock_dir: Directory for the write lock (default: beside the config).

    Returns:
        The path written.

    Raises:
        FileExistsError: If the file exists and ``overwrite`` is False.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    with _lock_for(path, lock_dir):
        if path.exists() and not overwrite:
            raise FileExistsError(f"Configuration file already exists: {path}")
        path.write_text(json.dumps(SAMPLE_CONFIG, indent=2) + "\n", encoding="utf-8")

    logger.info(f"Created configuration file: {path}")
    return path
