"""Tests for event and snapshot storage adapters."""

import pytest

from alertpipe.adapters.storage import (
    InMemoryLogStorage,
    RingBufferLogStorage,
    SnapshotRingBuffer,
)
from alertpipe.core.models import LogEntry
from alertpipe.core.ports import LogStoragePort
from tests.helpers import make_snapshot


async def _read(storage: LogStoragePort, since: float = 0, level: str | None = None):
    return [entry async for entry in storage.read(since=since, level=level)]


def _entry(timestamp: float, level: str = "INFO") -> LogEntry:
    return LogEntry(timestamp=timestamp, level=level, message=f"event {timestamp}")


@pytest.fixture(params=["in_memory", "ring_buffer"])
def storage(request: pytest.FixtureRequest) -> LogStoragePort:
    if request.param == "in_memory":
        return InMemoryLogStorage()
    return RingBufferLogStorage(max_size=100)


class TestLogStorage:
    """Behaviour shared by every LogStoragePort implementation."""

    @pytest.mark.storage
    @pytest.mark.tier(1)
    def test_implements_the_port(self, storage: LogStoragePort) -> None:
        assert isinstance(storage, LogStoragePort)

    @pytest.mark.storage
    @pytest.mark.tier(1)
    async def test_empty_storage_reads_nothing(self, storage: LogStoragePort) -> None:
        assert await _read(storage) == []

    @pytest.mark.storage
    @pytest.mark.tier(1)
    @pytest.mark.tra("Storage.Logs.Order")
    async def test_reads_are_ordered_by_timestamp(
        self, storage: LogStoragePort
    ) -> None:
        for timestamp in (3.0, 1.0, 2.0):
            storage.write(_entry(timestamp))

        assert [e.timestamp for e in await _read(storage)] == [1.0, 2.0, 3.0]

    @pytest.mark.storage
    @pytest.mark.tier(1)
    async def test_since_is_exclusive(self, storage: LogStoragePort) -> None:
        for timestamp in (1.0, 2.0, 3.0):
            storage.write(_entry(timestamp))

        assert [e.timestamp for e in await _read(storage, since=2.0)] == [3.0]

    @pytest.mark.storage
    @pytest.mark.tier(1)
    async def test_level_filter(self, storage: LogStoragePort) -> None:
        storage.write(_entry(1.0, "INFO"))
        storage.write(_entry(2.0, "ERROR"))

        assert [e.level for e in await _read(storage, level="ERROR")] == ["ERROR"]


class TestRingBufferLogStorage:
    """Eviction of the oldest entries."""

    @pytest.mark.storage
    @pytest.mark.tier(1)
    async def test_evicts_oldest_when_full(self) -> None:
        storage = RingBufferLogStorage(max_size=2)
        for timestamp in (1.0, 2.0, 3.0):
            storage.write(_entry(timestamp))

        assert len(storage) == 2
        assert [e.timestamp for e in await _read(storage)] == [2.0, 3.0]


class TestInMemoryLogStorage:
    @pytest.mark.storage
    @pytest.mark.tier(1)
    def test_clear(self) -> None:
        storage = InMemoryLogStorage()
        storage.write(_entry(1.0))

        storage.clear()

        assert len(storage) == 0


class TestSnapshotRingBuffer:
    """Age- and count-bounded snapshot retention."""

    @pytest.mark.storage
    @pytest.mark.tier(1)
    @pytest.mark.tra("Storage.Snapshots.Lookback")
    def test_evicts_snapshots_older_than_lookback(self) -> None:
        buffer = SnapshotRingBuffer(lookback=60.0)
        for timestamp in (0.0, 30.0, 60.0, 90.0):
            buffer.append(make_snapshot(timestamp, {}))

        assert [s.timestamp for s in buffer.snapshots()] == [30.0, 60.0, 90.0]
        assert buffer.latest().timestamp == 90.0

    @pytest.mark.storage
    @pytest.mark.tier(1)
    def test_max_size_caps_retention(self) -> None:
        buffer = SnapshotRingBuffer(lookback=3600.0, max_size=2)
        for timestamp in (0.0, 1.0, 2.0):
            buffer.append(make_snapshot(timestamp, {}))

        assert len(buffer) == 2

    @pytest.mark.storage
    @pytest.mark.tier(1)
    def test_rejects_out_of_order_snapshots(self) -> None:
        buffer = SnapshotRingBuffer(lookback=60.0)
        buffer.append(make_snapshot(10.0, {}))

        with pytest.raises(ValueError, match="older than"):
            buffer.append(make_snapshot(5.0, {}))

    @pytest.mark.storage
    @pytest.mark.tier(1)
    def test_equal_timestamps_are_accepted(self) -> None:
        buffer = SnapshotRingBuffer(lookback=60.0)
        buffer.append(make_snapshot(10.0, {}))
        buffer.append(make_snapshot(10.0, {}))

        assert len(buffer) == 2

    @pytest.mark.storage
    @pytest.mark.tier(1)
    def test_lookback_only_grows(self) -> None:
        buffer = SnapshotRingBuffer(lookback=60.0)

        buffer.extend_lookback(30.0)
        assert buffer.lookback == 60.0
        buffer.extend_lookback(600.0)
        assert buffer.lookback == 600.0

    @pytest.mark.storage
    @pytest.mark.tier(1)
    def test_empty_buffer(self) -> None:
        buffer = SnapshotRingBuffer(lookback=60.0)

        assert buffer.latest() is None
        assert buffer.snapshots() == ()

    @pytest.mark.storage
    @pytest.mark.tier(1)
    def test_rejects_non_positive_lookback(self) -> None:
        with pytest.raises(ValueError):
            SnapshotRingBuffer(lookback=0)
