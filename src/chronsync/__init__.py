"""chronsync - a cron daemon that reloads its schedule live."""

from importlib.metadata import version, PackageNotFoundError

try:
    __version__ = version("chronsync")
except PackageNotFoundError:
    __version__ = "0.0.0-dev"

from chronsync.cron import JsonConfigLoader, ReloadCoordinator, SchedulerCore
from chronsync.service import ChronsyncDaemon

__all__ = ["ChronsyncDaemon", "SchedulerCore", "ReloadCoordinator", "JsonConfigLoader"]
