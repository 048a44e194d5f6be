"""Thread-safe bounded buffer for framed log lines."""

import logging
import threading
from collections import deque
from typing import Iterable, List, Tuple

from serial_log_lib.models import LogLine

logger = logging.getLogger(__name__)


class BoundedLogBuffer:
    """Thread-safe fixed-capacity FIFO buffer for log lines.

    Once the buffer reaches capacity, the oldest lines are discarded when
    new lines are appended. Every operation holds the lock for its whole
    duration, so readers see either the state before or after an append.
    """

    def __init__(self, capacity: int = 1000) -> None:
        """Initialize buffer.

        Args:
            capacity: Maximum number of lines to keep. Defaults to 1000.
        """
        if capacity <= 0:
            raise ValueError(f"capacity must be positive, got {capacity}")

        self._buffer: deque[LogLine] = deque(maxlen=capacity)
        self._lock = threading.Lock()
        self._capacity = capacity
        self._total = 0
        self._cleared_at = 0  # _total when clear() last ran

    def append(self, lines: Iterable[LogLine]) -> None:
        """Append lines in order (thread-safe, atomic).

        If the buffer overflows, lines are evicted from the oldest end.

        Args:
            lines: LogLine instances, oldest first
        """
        batch = list(lines)
        if not batch:
            return

        with self._lock:
            self._buffer.extend(batch)
            self._total += len(batch)
            logger.debug(
                f"Appended {len(batch)} lines, buffer size: "
                f"{len(self._buffer)}/{self._capacity}"
            )

    def snapshot(self) -> List[LogLine]:
        """Get a copy of all current lines (thread-safe).

        Returns:
            List of LogLine instances, ordered oldest to newest
        """
        with self._lock:
            return list(self._buffer)

    def since(self, cursor: int) -> Tuple[List[LogLine], int]:
        """Get lines appended after a cursor returned by a previous call.

        Lines evicted or cleared before the caller caught up are skipped;
        every line appended after the last clear() is still returned.

        Args:
            cursor: Total append count seen by the caller (0 initially)

        Returns:
            Tuple of (new lines oldest first, new cursor)
        """
        with self._lock:
            fresh = self._total - max(cursor, self._cleared_at)
            if fresh <= 0:
                return [], self._total
            fresh = min(fresh, len(self._buffer))
            if fresh == 0:
                return [], self._total
            return list(self._buffer)[-fresh:], self._total

    def set_capacity(self, capacity: int) -> None:
        """Change the capacity; shrinking truncates from the oldest end.

        Args:
            capacity: New maximum number of lines (>= 1)
        """
        if capacity <= 0:
            raise ValueError(f"capacity must be positive, got {capacity}")

        with self._lock:
            dropped = max(0, len(self._buffer) - capacity)
            self._buffer = deque(self._buffer, maxlen=capacity)
            self._capacity = capacity
            logger.debug(f"Capacity set to {capacity}, dropped {dropped} lines")

    def clear(self) -> None:
        """Remove all lines from buffer (thread-safe)."""
        with self._lock:
            count = len(self._buffer)
            self._buffer = deque(maxlen=self._capacity)
            self._cleared_at = self._total
            logger.debug(f"Cleared {count} lines from buffer")

    def __len__(self) -> int:
        with self._lock:
            return len(self._buffer)

    @property
    def capacity(self) -> int:
        """Maximum number of lines kept."""
        return self._capacity

    @property
    def total_appended(self) -> int:
        """Lines appended since creation, including cleared ones."""
        with self._lock:
            return self._total
