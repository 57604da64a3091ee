"""File watching for the configuration file.

watchdog delivers events on its observer thread; they are filtered down to
writes of the single config file and handed to the asyncio loop.
"""

import asyncio
import logging
import os
from collections.abc import Callable
from pathlib import Path

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

logger = logging.getLogger(__name__)

# Event types that can change the file's content; reads are ignored
WRITE_EVENT_TYPES = frozenset({"modified", "created", "moved", "deleted", "closed"})


def _normalize(path: str | bytes | Path) -> str:
    if isinstance(path, bytes):
        path = os.fsdecode(path)
    return os.path.normpath(os.path.abspath(path))


class ConfigEventHandler(FileSystemEventHandler):
    """Forwards write events for one file to a callback."""

    def __init__(self, path: Path, on_change: Callable[[], None]) -> None:
        super().__init__()
        self._path = _normalize(path)
        self._on_change = on_change

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory or event.event_type not in WRITE_EVENT_TYPES:
            return

        paths = [event.src_path, getattr(event, "dest_path", "")]
        if any(p and _normalize(p) == self._path for p in paths):
            logger.debug(f"Config file event: {event.event_type} {event.src_path}")
            self._on_change()


class ConfigWatcher:
    """Watches the configuration file and reports changes.

    The directory is watched rather than the file itself so that editors
    which save by writing a new file and renaming it are still seen.

    Example:
        watcher = ConfigWatcher(path, coordinator.notify)
        watcher.start()
        ...
        watcher.stop()
    """

    def __init__(self, path: Path, on_change: Callable[[], None]) -> None:
        """Initialize the watcher.

        Args:
            path: Config file to watch.
            on_change: Called on the event loop for every matching event.
        """
        self._path = Path(path).absolute()
        self._on_change = on_change
        self._observer: Observer | None = None

    @property
    def is_running(self) -> bool:
        return self._observer is not None

    def start(self) -> None:
        """Start watching. Must be called from within the running event loop."""
        if self._observer is not None:
            logger.warning("Config watcher is already running")
            return

        loop = asyncio.get_running_loop()

        def notify_threadsafe() -> None:
            loop.call_soon_threadsafe(self._on_change)

        handler = ConfigEventHandler(self._path, notify_threadsafe)
        observer = Observer()
        observer.schedule(handler, str(self._path.parent), recursive=False)
        observer.daemon = True
        observer.start()
        self._observer = observer
        logger.info(f"Watching {self._path} for changes")

    def stop(self) -> None:
        """Stop watching."""
        if self._observer is None:
            return
        self._observer.stop()
        self._observer.join(timeout=5)
        self._observer = None
