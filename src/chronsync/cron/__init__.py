"""Scheduling engine for chronsync.

This package provides the core of the daemon:
- Cron expression parsing and next-fire computation
- JSON configuration loading into an immutable schedule set
- Process execution with timeouts and failure webhooks
- One timer loop per task with atomic cutover on reload
- Debounced hot reload driven by a file watcher

Example:
    from chronsync.cron import JsonConfigLoader, ReloadCoordinator, SchedulerCore

    core = SchedulerCore()
    await core.cutover(JsonConfigLoader().load(path))
    coordinator = ReloadCoordinator(core, JsonConfigLoader(), path)
    await coordinator.run()
"""

from chronsync.cron.errors import (
    ChronsyncError,
    ConfigError,
    ScheduleParseError,
    SchedulingError,
    SpawnError,
)
from chronsync.cron.executor import ExecutionResult, ProcessExecutor
from chronsync.cron.loader import ConfigLoader, JsonConfigLoader, write_initial_config
from chronsync.cron.reload import ReloadCoordinator, ReloadState
from chronsync.cron.schedule import (
    ScheduleExpression,
    get_cron_description,
    local_now,
    local_timezone,
    next_fire_after,
    parse_schedule,
    time_until_next_fire,
    to_utc,
    validate_cron_expression,
)
from chronsync.cron.service import RunningScheduleHandle, SchedulerCore
from chronsync.cron.types import ConfigFile, ScheduleSet, TaskDefinition
from chronsync.cron.watcher import ConfigWatcher

__all__ = [
    # Scheduler
    "SchedulerCore",
    "RunningScheduleHandle",
    "ReloadCoordinator",
    "ReloadState",
    "ConfigWatcher",
    # Types
    "TaskDefinition",
    "ScheduleSet",
    "ConfigFile",
    # Loading
    "ConfigLoader",
    "JsonConfigLoader",
    "write_initial_config",
    # Executor
    "ProcessExecutor",
    "ExecutionResult",
    # Schedule utilities
    "ScheduleExpression",
    "parse_schedule",
    "next_fire_after",
    "validate_cron_expression",
    "get_cron_description",
    "time_until_next_fire",
    "local_now",
    "local_timezone",
    "to_utc",
    # Errors
    "ChronsyncError",
    "ConfigError",
    "ScheduleParseError",
    "SchedulingError",
    "SpawnError",
]
