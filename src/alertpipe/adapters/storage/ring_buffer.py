"""Ring buffer storage adapters for events and metric snapshots.

Provides bounded in-memory storage that automatically evicts oldest
entries when the buffer is full, so a long-running process keeps a
predictable memory footprint.
"""

import threading
from collections import deque
from collections.abc import AsyncIterable

from alertpipe.core.models import LogEntry, Snapshot


class RingBufferLogStorage:
    """Ring buffer implementation of LogStoragePort.

    Stores log entries in a fixed-size circular buffer. When the buffer
    is full, the oldest entry is automatically evicted to make room for
    new entries.

    Args:
        max_size: Maximum number of entries to store.
    """

    def __init__(self, max_size: int) -> None:
        self._buffer: deque[LogEntry] = deque(maxlen=max_size)
        self._lock = threading.Lock()

    def write(self, entry: LogEntry) -> None:
        """Write a log entry to storage."""
        with self._lock:
            self._buffer.append(entry)

    async def read(
        self, since: float = 0, level: str | None = None
    ) -> AsyncIterable[LogEntry]:
        """Read log entries since the given timestamp.

        Returns entries with timestamp > since, ordered by timestamp ascending.
        """
        with self._lock:
            entries = list(self._buffer)
        filtered = [
            e
            for e in entries
            if e.timestamp > since and (level is None or e.level == level)
        ]
        for entry in sorted(filtered, key=lambda e: e.timestamp):
            yield entry

    def __len__(self) -> int:
        return len(self._buffer)


class SnapshotRingBuffer:
    """Snapshots ordered by timestamp, bounded by age and by count.

    Args:
        lookback: Seconds of history to keep behind the newest snapshot.
        max_size: Hard cap on the number of snapshots kept.
    """

    def __init__(self, lookback: float, max_size: int = 10_000) -> None:
        if lookback <= 0:
            raise ValueError("lookback must be positive")
        self._lookback = lookback
        self._buffer: deque[Snapshot] = deque(maxlen=max_size)
        self._lock = threading.Lock()

    @property
    def lookback(self) -> float:
        return self._lookback

    def extend_lookback(self, seconds: float) -> None:
        """Grow the retention window; it never shrinks."""
        with self._lock:
            self._lookback = max(self._lookback, seconds)

    def append(self, snapshot: Snapshot) -> None:
        """Add a snapshot and evict those that fell out of the window.

        Raises:
            ValueError: The snapshot is older than the newest one held.
        """
        with self._lock:
            if self._buffer and snapshot.timestamp < self._buffer[-1].timestamp:
                raise ValueError(
                    f"snapshot at {snapshot.timestamp} is older than "
                    f"the newest held ({self._buffer[-1].timestamp})"
                )
            self._buffer.append(snapshot)
            horizon = snapshot.timestamp - self._lookback
            while self._buffer and self._buffer[0].timestamp < horizon:
                self._buffer.popleft()

    def snapshots(self) -> tuple[Snapshot, ...]:
        with self._lock:
            return tuple(self._buffer)

    def latest(self) -> Snapshot | None:
        with self._lock:
            return self._buffer[-1] if self._buffer else None

    def __len__(self) -> int:
        return len(self._buffer)
