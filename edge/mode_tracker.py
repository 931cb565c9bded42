"""
Permission drift tracker.

Keeps the last known permission bits of every visible path under the edge
root. Change sources do not reliably report chmod, so the edge polls the
cache periodically and turns every difference into a Chmod event.
"""

import threading
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from common.fs_ops import get_mode
from common.logging_config import get_logger
from common.paths import is_within
from common.types import ChangeEvent, ChangeKind

logger = get_logger(__name__)


class ModeTracker:
    """Thread-safe path -> mode cache for one root."""

    def __init__(self, root: Path):
        self.root = Path(root)
        self._modes: Dict[str, int] = {}
        self._lock = threading.Lock()

    def _stat(self, path: str) -> Optional[int]:
        try:
            return get_mode(self.root.joinpath(*path.split('/')))
        except OSError:
            return None

    def warm(self, paths: Iterable[str]) -> int:
        """
        Replace the cache with the current modes of the given paths.

        Returns:
            Number of paths cached
        """
        modes = {}
        for path in paths:
            mode = self._stat(path)
            if mode is not None:
                modes[path] = mode
        with self._lock:
            self._modes = modes
        logger.debug(f"Mode cache warmed with {len(modes)} entries")
        return len(modes)

    def record(self, path: str) -> Optional[int]:
        """Stat a path and store its mode."""
        mode = self._stat(path)
        if mode is not None:
            self.set(path, mode)
        return mode

    def set(self, path: str, mode: int) -> None:
        with self._lock:
            self._modes[path] = mode

    def get(self, path: str) -> Optional[int]:
        with self._lock:
            return self._modes.get(path)

    def forget(self, path: str) -> None:
        """Drop a path and everything beneath it."""
        with self._lock:
            for cached in [p for p in self._modes if is_within(p, path)]:
                del self._modes[cached]

    def move(self, path: str, dest_path: str) -> None:
        """Re-key a path and its descendants after a rename."""
        with self._lock:
            moved = {p: m for p, m in self._modes.items() if is_within(p, path)}
            for cached, mode in moved.items():
                del self._modes[cached]
                self._modes[dest_path + cached[len(path):]] = mode

    def observe(self, path: str) -> Optional[int]:
        """
        Stat a path and update the cache.

        Returns:
            The new mode if it differs from the cached one (or nothing was
            cached), None if unchanged or the path is gone
        """
        mode = self._stat(path)
        if mode is None:
            return None
        with self._lock:
            previous = self._modes.get(path)
            self._modes[path] = mode
        return mode if previous != mode else None

    def poll(self) -> List[ChangeEvent]:
        """
        Re-stat every cached path.

        Returns:
            Chmod events for every path whose mode changed
        """
        with self._lock:
            snapshot = dict(self._modes)

        events = []
        vanished = []
        for path, previous in snapshot.items():
            mode = self._stat(path)
            if mode is None:
                vanished.append(path)
            elif mode != previous:
                events.append(ChangeEvent(kind=ChangeKind.CHMOD, path=path, mode=mode))

        with self._lock:
            for path in vanished:
                self._modes.pop(path, None)
            for event in events:
                self._modes[event.path] = event.mode

        if events:
            logger.debug(f"Mode poll detected {len(events)} change(s)")
        return events

    def __len__(self) -> int:
        with self._lock:
            return len(self._modes)
