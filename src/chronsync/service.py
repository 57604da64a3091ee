"""The chronsync daemon.

Runs the scheduler, the reload coordinator and the config watcher together
until a termination signal arrives.
"""

import asyncio
import logging
import os
import signal
import time
from pathlib import Path

from chronsync.config import settings
from chronsync.cron import (
    ConfigLoader,
    ConfigWatcher,
    JsonConfigLoader,
    ProcessExecutor,
    ReloadCoordinator,
    SchedulerCore,
)

logger = logging.getLogger(__name__)


def write_pid_file(pid_file: Path | None = None) -> Path:
    """Record the current process as the running daemon."""
    pid_file = pid_file or settings.pid_file
    pid_file.parent.mkdir(parents=True, exist_ok=True)
    pid_file.write_text(str(os.getpid()))
    return pid_file


def get_service_pid(pid_file: Path | None = None) -> int | None:
    """Get the PID of a running chronsync daemon, or None if not running."""
    pid_file = pid_file or settings.pid_file
    if not pid_file.exists():
        return None
    try:
        pid = int(pid_file.read_text().strip())
        os.kill(pid, 0)
    except PermissionError:
        # Alive, owned by another user
        return pid
    except (ValueError, ProcessLookupError):
        # Stale PID file
        pid_file.unlink(missing_ok=True)
        return None
    return pid


def stop_service(pid_file: Path | None = None, timeout: float = 4.0) -> bool:
    """Send SIGTERM to the running daemon and wait for it to exit.

    Args:
        pid_file: PID file of the daemon (default: settings.pid_file).
        timeout: Seconds to wait for the process to go away.

    Returns:
        True if a daemon was signalled, False if none was running.

    Raises:
        PermissionError: If the daemon belongs to another user.
    """
    pid_file = pid_file or settings.pid_file
    pid = get_service_pid(pid_file)
    if not pid:
        return False

    try:
        os.kill(pid, signal.SIGTERM)
    except ProcessLookupError:
        pid_file.unlink(missing_ok=True)
        return False

    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        time.sleep(0.2)
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            pid_file.unlink(missing_ok=True)
            break
    return True


class ChronsyncDaemon:
    """Long-running scheduler with live configuration reload."""

    def __init__(
        self,
        config_path: Path,
        loader: ConfigLoader | None = None,
        executor: ProcessExecutor | None = None,
        debounce_ms: int | None = None,
        lookahead_years: int | None = None,
    ) -> None:
        """Initialize the daemon.

        Args:
            config_path: Configuration file to load and watch.
            loader: Config loader (JSON by default).
            executor: Process executor for dispatched tasks.
            debounce_ms: Reload debounce, defaults to the settings value.
            lookahead_years: Fire time search window, defaults to the settings value.
        """
        self.config_path = Path(config_path)
        self.loader = loader or JsonConfigLoader(lock_dir=settings.state_dir)
        self.scheduler = SchedulerCore(
            executor or ProcessExecutor(webhook_timeout=settings.webhook_timeout_seconds),
            lookahead_years=lookahead_years or settings.lookahead_years,
        )
        self.coordinator = ReloadCoordinator(
            self.scheduler,
            self.loader,
            self.config_path,
            debounce_ms=settings.debounce_ms if debounce_ms is None else debounce_ms,
        )
        self.watcher = ConfigWatcher(self.config_path, self.coordinator.notify)
        self._stop_event = asyncio.Event()

    def request_stop(self) -> None:
        """Ask a running daemon to shut down gracefully."""
        logger.info("Shutdown requested. Shutting down gracefully...")
        self._stop_event.set()

    def _install_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> None:
        handlers = {
            signal.SIGINT: self.request_stop,
            signal.SIGTERM: self.request_stop,
        }
        if hasattr(signal, "SIGHUP"):
            handlers[signal.SIGHUP] = self.coordinator.notify

        for signum, callback in handlers.items():
            try:
                loop.add_signal_handler(signum, callback)
            except (NotImplementedError, RuntimeError):
                logger.debug(f"Signal handler for {signum} not supported here")

    def _remove_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> None:
        for name in ("SIGINT", "SIGTERM", "SIGHUP"):
            signum = getattr(signal, name, None)
            if signum is None:
                continue
            try:
                loop.remove_signal_handler(signum)
            except (NotImplementedError, RuntimeError):
                pass

    async def run(self) -> None:
        """Run until a stop is requested.

        Raises:
            ConfigError: If the initial configuration cannot be loaded.
            ScheduleParseError: If the initial configuration has an invalid schedule.
        """
        schedule_set = self.loader.load(self.config_path)
        logger.info(f"Configuration loaded. {len(schedule_set)} tasks.")

        loop = asyncio.get_running_loop()
        self._install_signal_handlers(loop)

        await self.scheduler.cutover(schedule_set)
        self.watcher.start()
        coordinator_task = asyncio.create_task(
            self.coordinator.run(),
            name="reload_coordinator",
        )
        logger.info("chronsync daemon started.")

        try:
            await self._stop_event.wait()
        finally:
            self.watcher.stop()
            coordinator_task.cancel()
            try:
                await coordinator_task
            except asyncio.CancelledError:
                pass
            await self.scheduler.shutdown()
            self._remove_signal_handlers(loop)
            logger.info("chronsync daemon stopped.")
