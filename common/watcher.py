"""Change source adapter: watchdog notifications translated into ChangeEvents."""

import os
import threading
from pathlib import Path
from typing import Callable, List, Optional

from watchdog.events import (
    EVENT_TYPE_CREATED,
    EVENT_TYPE_DELETED,
    EVENT_TYPE_MODIFIED,
    EVENT_TYPE_MOVED,
    FileSystemEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer

from common.exceptions import WatchError
from common.logging_config import get_logger
from common.paths import is_hidden, to_relative
from common.types import ChangeEvent, ChangeKind

logger = get_logger(__name__)


def translate_event(root: Path, event: FileSystemEvent) -> List[ChangeEvent]:
    """
    Translate one watchdog event into zero or more change events.

    Args:
        root: Resolved watched root
        event: Raw watchdog event

    Returns:
        Change events for visible paths under root
    """
    is_dir = event.is_directory
    relative = to_relative(root, os.fsdecode(event.src_path))

    if event.event_type == EVENT_TYPE_MOVED:
        # watchdog follows a directory move with sub-moves for every descendant
        if event.is_synthetic:
            return []
        destination = to_relative(root, os.fsdecode(event.dest_path))
        source_visible = relative is not None and not is_hidden(relative)
        destination_visible = destination is not None and not is_hidden(destination)

        if source_visible and destination_visible:
            return [ChangeEvent(kind=ChangeKind.RENAMED, path=relative, dest_path=destination)]
        if source_visible:
            kind = ChangeKind.DIR_DELETED if is_dir else ChangeKind.DELETED
            return [ChangeEvent(kind=kind, path=relative)]
        if destination_visible:
            kind = ChangeKind.DIR_ADDED if is_dir else ChangeKind.ADDED
            return [ChangeEvent(kind=kind, path=destination)]
        return []

    if relative is None or is_hidden(relative):
        return []

    if event.event_type == EVENT_TYPE_CREATED:
        kind = ChangeKind.DIR_ADDED if is_dir else ChangeKind.ADDED
    elif event.event_type == EVENT_TYPE_DELETED:
        kind = ChangeKind.DIR_DELETED if is_dir else ChangeKind.DELETED
    elif event.event_type == EVENT_TYPE_MODIFIED and not is_dir:
        kind = ChangeKind.MODIFIED
    else:
        return []

    return [ChangeEvent(kind=kind, path=relative)]


class _RootEventHandler(FileSystemEventHandler):
    """Forwards translated events for one root to a callback."""

    def __init__(self, root: Path, callback: Callable[[ChangeEvent], None]):
        super().__init__()
        self.root = root
        self.callback = callback

    def on_any_event(self, event: FileSystemEvent) -> None:
        try:
            for change in translate_event(self.root, event):
                logger.debug(f"Watcher event: {change.kind.value} {change.path}")
                self.callback(change)
        except Exception as e:
            logger.error(f"Watcher error for {event.src_path}: {e}", exc_info=True)


class ChangeSource:
    """
    Restartable recursive watch of one replica root.

    The callback runs on the observer thread; callers hand events over to
    their own event loop.
    """

    def __init__(self, root: Path, callback: Callable[[ChangeEvent], None]):
        """
        Initialize change source.

        Args:
            root: Replica root to watch
            callback: Called with each ChangeEvent
        """
        self.root = Path(root).resolve()
        self.callback = callback
        self._observer: Optional[Observer] = None
        self._lock = threading.Lock()

    @property
    def running(self) -> bool:
        return self._observer is not None

    def start(self) -> None:
        """
        Start watching the root.

        Raises:
            WatchError: If the watch cannot be established
        """
        with self._lock:
            if self._observer is not None:
                logger.warning("Watcher already running, restarting")
                self._stop_locked()

            if not self.root.is_dir():
                raise WatchError(f"Watch root does not exist: {self.root}", str(self.root))

            observer = Observer()
            try:
                observer.schedule(_RootEventHandler(self.root, self.callback), str(self.root), recursive=True)
                observer.start()
            except OSError as e:
                raise WatchError(f"Failed to watch {self.root}: {e}", str(self.root))

            self._observer = observer
            logger.info(f"File watcher is ready [root={self.root}]")

    def stop(self) -> None:
        """Stop watching; safe to call when not running."""
        with self._lock:
            self._stop_locked()

    def _stop_locked(self) -> None:
        if self._observer is None:
            return
        observer = self._observer
        self._observer = None
        observer.stop()
        observer.join(timeout=5)
        logger.info(f"File watcher stopped [root={self.root}]")
