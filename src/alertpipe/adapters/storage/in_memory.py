"""In-memory storage adapter for observability events."""

import threading
from collections.abc import AsyncIterable

from alertpipe.core.models import LogEntry


class InMemoryLogStorage:
    """In-memory implementation of LogStoragePort.

    Stores log entries in a list. Suitable for testing and
    low-volume processes where the event history is short.
    """

    def __init__(self) -> None:
        self._entries: list[LogEntry] = []
        self._lock = threading.Lock()

    def write(self, entry: LogEntry) -> None:
        """Write a log entry to storage."""
        with self._lock:
            self._entries.append(entry)

    async def read(
        self, since: float = 0, level: str | None = None
    ) -> AsyncIterable[LogEntry]:
        """Read log entries since the given timestamp.

        Returns entries with timestamp > since, ordered by timestamp ascending.
        """
        with self._lock:
            entries = list(self._entries)
        filtered = [
            e
            for e in entries
            if e.timestamp > since and (level is None or e.level == level)
        ]
        for entry in sorted(filtered, key=lambda e: e.timestamp):
            yield entry

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
