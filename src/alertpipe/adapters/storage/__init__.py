"""Storage adapters."""

from alertpipe.adapters.storage.in_memory import InMemoryLogStorage
from alertpipe.adapters.storage.ring_buffer import (
    RingBufferLogStorage,
    SnapshotRingBuffer,
)

__all__ = ["InMemoryLogStorage", "RingBufferLogStorage", "SnapshotRingBuffer"]
