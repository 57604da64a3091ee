"""Hot reload of the live schedule.

The ReloadCoordinator turns (possibly bursty) change notifications into
single reload cycles. A reload is all-or-nothing: if the candidate
configuration fails validation the live schedule keeps running untouched.
"""

import asyncio
import logging
import time
from enum import Enum
from pathlib import Path

from chronsync.cron.errors import ConfigError, ScheduleParseError
from chronsync.cron.loader import ConfigLoader
from chronsync.cron.service import SchedulerCore

logger = logging.getLogger(__name__)


class ReloadState(str, Enum):
    """Phase of the reload cycle.

    Attributes:
        IDLE: Waiting for a change notification.
        VALIDATING: Loading and validating the candidate configuration.
        CUTOVER: Replacing the live schedule.
    """

    IDLE = "idle"
    VALIDATING = "validating"
    CUTOVER = "cutover"


class ReloadCoordinator:
    """Reloads the configuration when it changes.

    Example:
        coordinator = ReloadCoordinator(core, JsonConfigLoader(), path)
        watcher = ConfigWatcher(path, coordinator.notify)
        await coordinator.run()
    """

    def __init__(
        self,
        scheduler: SchedulerCore,
        loader: ConfigLoader,
        config_path: Path,
        debounce_ms: int = 500,
    ) -> None:
        """Initialize the coordinator.

        Args:
            scheduler: The scheduler whose schedule is replaced.
            loader: Loader for the candidate configuration.
            config_path: Canonical configuration path, re-read on every change.
            debounce_ms: Quiet period that ends a burst of notifications.
        """
        self._scheduler = scheduler
        self._loader = loader
        self._config_path = Path(config_path)
        self._debounce_ms = debounce_ms
        self._changed = asyncio.Event()

        self.state = ReloadState.IDLE
        self.reload_count = 0
        self.failed_count = 0

    @property
    def config_path(self) -> Path:
        return self._config_path

    def notify(self) -> None:
        """Record that the configuration file changed."""
        logger.debug(f"Change notification for {self._config_path}")
        self._changed.set()

    async def run(self) -> None:
        """Process change notifications until cancelled."""
        while True:
            await self._changed.wait()
            await self._wait_for_debounce()
            self._changed.clear()

            logger.info(">>> CONFIG CHANGE DETECTED! RELOADING... <<<")
            try:
                await self.reload()
            except Exception as e:
                # One failed cycle must not end the coordinator
                self.state = ReloadState.IDLE
                self.failed_count += 1
                logger.exception(f"Unexpected error while reloading configuration: {e}")

    async def _wait_for_debounce(self) -> None:
        """Wait until no notification arrived for the debounce period."""
        if self._debounce_ms <= 0:
            return

        deadline = time.monotonic() + (self._debounce_ms / 1000)
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break

            self._changed.clear()
            try:
                await asyncio.wait_for(self._changed.wait(), timeout=remaining)
                # Another change in the burst, extend the quiet period
                deadline = time.monotonic() + (self._debounce_ms / 1000)
            except asyncio.TimeoutError:
                break

    async def reload(self) -> bool:
        """Validate the configuration and cut over to it.

        Returns:
            True if the live schedule was replaced.
        """
        self.state = ReloadState.VALIDATING
        try:
            candidate = await asyncio.to_thread(self._loader.load, self._config_path)
        except ScheduleParseError as e:
            self.state = ReloadState.IDLE
            self.failed_count += 1
            logger.error(f"Error reloading configuration (invalid cron schedule): {e}")
            return False
        except ConfigError as e:
            self.state = ReloadState.IDLE
            self.failed_count += 1
            logger.error(f"Error reloading configuration (Configuration rejected): {e}")
            return False

        self.state = ReloadState.CUTOVER
        try:
            await self._scheduler.cutover(candidate)
        finally:
            self.state = ReloadState.IDLE

        self.reload_count += 1
        logger.info(f"New configuration applied. {len(candidate)} tasks reloaded.")
        return True
