"""
Operation ledger for echo suppression.

A replica registers the key of every mutation it applies on behalf of a
peer (inbound) or emits to a peer (outbound). While the marker is active
the handler for the opposite direction ignores the same key, so the
change source re-detecting a write this replica just performed does not
bounce it back. Markers expire after a fixed window instead of being
released by the caller: a second genuine edit of the same path inside
the window is suppressed too.
"""

import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Hashable, Iterable, Optional, Tuple

from common.constants import DEFAULT_SUPPRESSION_WINDOW_MS
from common.logging_config import get_logger
from common.types import Direction, OperationKey

logger = get_logger(__name__)


@dataclass
class LedgerMarker:
    """
    Active registration for one key.

    Attributes:
        deadline: Clock value after which the marker is released
        owner: Optional identity of whoever caused the mutation
    """
    deadline: float
    owner: Optional[Hashable] = None


class OperationLedger:
    """
    Thread-safe table of time-windowed operation markers.
    """

    def __init__(
        self,
        window_seconds: float = DEFAULT_SUPPRESSION_WINDOW_MS / 1000.0,
        clock: Callable[[], float] = time.monotonic
    ):
        """
        Initialize ledger.

        Args:
            window_seconds: How long a registration stays active
            clock: Monotonic time source (injectable for tests)
        """
        self.window_seconds = window_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._markers: Dict[Tuple[Direction, OperationKey], LedgerMarker] = {}

    def register(
        self,
        key: OperationKey,
        direction: Direction,
        owner: Optional[Hashable] = None
    ) -> None:
        """
        Mark a key active for one suppression window.

        Re-registering an active key extends its deadline and replaces the owner.
        """
        deadline = self._clock() + self.window_seconds
        with self._lock:
            self._markers[(direction, key)] = LedgerMarker(deadline=deadline, owner=owner)
        logger.debug(f"Registered {direction.value} {key.family.value}:{key.path}")

    def register_all(
        self,
        keys: Iterable[OperationKey],
        direction: Direction,
        owner: Optional[Hashable] = None
    ) -> None:
        """Register several keys with the same direction and owner."""
        for key in keys:
            self.register(key, direction, owner)

    def lookup(self, key: OperationKey, direction: Direction) -> Optional[LedgerMarker]:
        """
        Get the active marker for a key.

        Returns:
            LedgerMarker if registered and not expired, None otherwise
        """
        now = self._clock()
        with self._lock:
            marker = self._markers.get((direction, key))
            if marker is None:
                return None
            if marker.deadline <= now:
                del self._markers[(direction, key)]
                return None
            return marker

    def is_active(self, key: OperationKey, direction: Direction) -> bool:
        """Check whether a key is registered for the given direction."""
        return self.lookup(key, direction) is not None

    def release(self, key: OperationKey, direction: Direction) -> bool:
        """
        Release a marker before its window ends.

        Returns:
            True if a marker was removed
        """
        with self._lock:
            return self._markers.pop((direction, key), None) is not None

    def prune(self) -> int:
        """
        Drop expired markers.

        Returns:
            Number of markers removed
        """
        now = self._clock()
        with self._lock:
            expired = [k for k, marker in self._markers.items() if marker.deadline <= now]
            for k in expired:
                del self._markers[k]
        return len(expired)

    def __len__(self) -> int:
        self.prune()
        with self._lock:
            return len(self._markers)
