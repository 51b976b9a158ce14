from __future__ import annotations

import logging
import os
from collections.abc import Callable

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from cabundle_sync.src.errors import WatchSetupError
from cabundle_sync.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)

# Reading the bundle ourselves produces these on inotify backends.
_IGNORED_EVENT_TYPES = frozenset({"opened", "closed_no_write"})


class _DirectoryEventHandler(FileSystemEventHandler):
    def __init__(self, on_change: Callable[[], None]) -> None:
        super().__init__()
        self._on_change = on_change

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.event_type in _IGNORED_EVENT_TYPES:
            return
        LOGGER.debug("CA bundle directory event %s on %s", event.event_type, event.src_path)
        METRICS.file_events_total.inc()
        self._on_change()


class CertFileWatcher:
    """Forwards filesystem events from the CA bundle's directory.

    The parent directory is watched instead of the file so that atomic
    rename-based updates, such as the ``..data`` symlink swap Kubernetes uses
    for secret volumes, are still observed.  Every relevant event calls
    ``on_change`` once; bursts are forwarded as-is and coalesced by the
    reconciler.
    """

    def __init__(self, path: str, on_change: Callable[[], None]) -> None:
        self.path = path
        self.directory = os.path.dirname(os.path.abspath(path))
        self._handler = _DirectoryEventHandler(on_change)
        self._observer: Observer | None = None

    @property
    def is_running(self) -> bool:
        return self._observer is not None and self._observer.is_alive()

    def start(self) -> None:
        """Start the observer thread; raises :class:`WatchSetupError` on failure."""
        if self._observer is not None:
            LOGGER.warning("CA bundle watcher already started")
            return
        if not os.path.isdir(self.directory):
            raise WatchSetupError(
                f"Could not watch {self.path}: directory {self.directory} does not exist"
            )

        observer = Observer()
        try:
            observer.schedule(self._handler, self.directory, recursive=False)
            observer.start()
        except OSError as exc:
            raise WatchSetupError(f"Could not watch {self.path}: {exc}") from exc

        self._observer = observer
        LOGGER.info("Watching %s for CA bundle changes", self.directory)

    def stop(self) -> None:
        observer = self._observer
        if observer is None:
            return
        observer.stop()
        observer.join(timeout=5)
        self._observer = None
        LOGGER.info("CA bundle watcher stopped")
