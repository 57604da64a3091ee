"""Type definitions for scheduled tasks.

This module defines the Pydantic models used to validate the configuration
file and the immutable schedule set handed to the scheduler.
"""

from collections.abc import Iterator
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from chronsync.cron.schedule import ScheduleExpression, parse_schedule


class TaskDefinition(BaseModel):
    """One scheduled unit of work.

    Attributes:
        name: Task name, used to correlate log lines.
        cron_schedule: Parsed six or seven field cron expression.
        command: Executable path or binary name.
        args: Arguments passed to the command, in order.
        timeout: Seconds after which a still-running child is killed.
        cwd: Working directory for the child.
        env: Extra environment variables for the child.
        webhook_url: URL that receives an alert when a run fails.
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    name: str = Field(..., min_length=1, description="Task name")
    cron_schedule: ScheduleExpression = Field(..., description="Cron schedule")
    command: str = Field(..., min_length=1, description="Command to execute")
    args: tuple[str, ...] = Field(default=(), description="Command arguments")
    timeout: int | None = Field(
        default=None,
        gt=0,
        description="Maximum execution time in seconds",
    )
    cwd: str | None = Field(default=None, description="Working directory")
    env: dict[str, str] | None = Field(
        default=None,
        description="Extra environment variables",
    )
    webhook_url: str | None = Field(
        default=None,
        description="Webhook notified when a run fails",
    )

    @field_validator("cron_schedule", mode="before")
    @classmethod
    def _parse_cron_schedule(cls, value: Any) -> ScheduleExpression:
        if isinstance(value, ScheduleExpression):
            return value
        return parse_schedule(value)

    @field_validator("args", mode="before")
    @classmethod
    def _default_args(cls, value: Any) -> Any:
        return () if value is None else value

    @property
    def command_line(self) -> list[str]:
        """The full argv of the task."""
        return [self.command, *self.args]


class ConfigFile(BaseModel):
    """Root structure of the configuration file."""

    tasks: list[TaskDefinition] = Field(..., description="Scheduled tasks")


class ScheduleSet:
    """Ordered, immutable collection of task definitions.

    Exactly one schedule set is live at a time. It is replaced on reload,
    never modified.
    """

    __slots__ = ("_tasks",)

    def __init__(self, tasks: list[TaskDefinition] | tuple[TaskDefinition, ...] = ()) -> None:
        self._tasks = tuple(tasks)

    def __iter__(self) -> Iterator[TaskDefinition]:
        return iter(self._tasks)

    def __len__(self) -> int:
        return len(self._tasks)

    def __bool__(self) -> bool:
        return bool(self._tasks)

    def __repr__(self) -> str:
        return f"ScheduleSet({self.names()!r})"

    def names(self) -> list[str]:
        """Task names in insertion order."""
        return [task.name for task in self._tasks]

    def get(self, name: str) -> TaskDefinition | None:
        """Get the first task with the given name."""
        for task in self._tasks:
            if task.name == name:
                return task
        return None

    def duplicate_names(self) -> list[str]:
        """Names declared by more than one task."""
        seen: set[str] = set()
        duplicates: list[str] = []
        for name in self.names():
            if name in seen and name not in duplicates:
                duplicates.append(name)
            seen.add(name)
        return duplicates
