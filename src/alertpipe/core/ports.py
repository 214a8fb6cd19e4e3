"""Port interfaces for adapters.

These protocols define the contracts that adapters must implement.
The core domain depends only on these interfaces, not concrete implementations.
"""

import enum
from collections.abc import AsyncIterable, Sequence
from typing import Protocol, runtime_checkable

from alertpipe.core.models import Alert, GroupKey, LogEntry, Snapshot


@runtime_checkable
class LogStoragePort(Protocol):
    """Port for observability event storage.

    Examples: InMemoryLogStorage, RingBufferLogStorage.
    """

    def write(self, entry: LogEntry) -> None:
        """Write a log entry to storage. Must be safe to call from any thread."""
        ...

    def read(
        self, since: float = 0, level: str | None = None
    ) -> AsyncIterable[LogEntry]:
        """Read log entries since the given timestamp.

        Args:
            since: Unix timestamp. Returns entries with timestamp > since.
                   Default 0 returns all entries.
            level: Only return entries with this level, if given.

        Returns:
            Async iterable of LogEntry objects, ordered by timestamp ascending.
        """
        ...


@runtime_checkable
class SnapshotSource(Protocol):
    """Port for anything the sampler can collect samples from."""

    async def collect(self, timestamp: float) -> Snapshot:
        """Collect the source's current samples, stamped with timestamp."""
        ...


class SendResult(enum.Enum):
    ACK = "ack"
    RETRY_LATER = "retry-later"


@runtime_checkable
class NotifierPort(Protocol):
    """Port for notification receivers.

    Implementations raise DeliveryError on transport failure.
    """

    name: str

    async def send(
        self, group_key: GroupKey, alerts: Sequence[Alert], timestamp: float
    ) -> SendResult:
        """Deliver one group notification."""
        ...
