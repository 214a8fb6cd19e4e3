"""Sampler: periodic snapshots retained over a lookback window."""

import asyncio
import logging
import time
from collections.abc import Callable, Iterable, Iterator, Sequence
from dataclasses import dataclass
from typing import Any

from alertpipe.adapters.storage.ring_buffer import SnapshotRingBuffer
from alertpipe.core.expression import Expr, RangeSeries, Value, evaluate, parse
from alertpipe.core.models import Sample, Snapshot, target_labels, with_target_labels
from alertpipe.core.ports import SnapshotSource
from alertpipe.core.registry import MetricRegistry, flatten
from alertpipe.core.rules import Rule

logger = logging.getLogger(__name__)

DEFAULT_LOOKBACK = 300.0


class RegistrySource:
    """Snapshots the in-process registry, reporting itself as ``up``."""

    def __init__(
        self,
        registry: MetricRegistry,
        job: str | None = None,
        instance: str | None = None,
    ) -> None:
        self._registry = registry
        self._labels = target_labels(job, instance)

    async def collect(self, timestamp: float) -> Snapshot:
        snapshot = flatten(self._registry.collect(), timestamp)
        samples = [*snapshot.samples, Sample("up", (), 1.0)]
        return Snapshot(
            timestamp=timestamp,
            samples=tuple(with_target_labels(samples, self._labels)),
            metric_names=snapshot.metric_names | {"up"},
        )


@dataclass(frozen=True)
class SnapshotWindow(Sequence[Snapshot]):
    """Immutable, timestamp-ordered view of the retained snapshots.

    This is the hand-off object between the sampler and the rule engine.
    """

    snapshots: tuple[Snapshot, ...] = ()

    def __getitem__(self, index: Any) -> Any:
        return self.snapshots[index]

    def __len__(self) -> int:
        return len(self.snapshots)

    def __iter__(self) -> Iterator[Snapshot]:
        return iter(self.snapshots)

    @property
    def latest(self) -> Snapshot | None:
        return self.snapshots[-1] if self.snapshots else None

    @property
    def timestamp(self) -> float | None:
        return self.snapshots[-1].timestamp if self.snapshots else None

    def since(self, lookback: float) -> "SnapshotWindow":
        """The snapshots no older than lookback seconds before the newest."""
        if not self.snapshots:
            return self
        horizon = self.snapshots[-1].timestamp - lookback
        recent = tuple(s for s in self.snapshots if s.timestamp >= horizon)
        return SnapshotWindow(recent)

    def query(
        self, expression: str | Expr, lookback: float | None = None
    ) -> list[tuple[dict[str, str], float]] | float:
        """Evaluate an expression at the newest snapshot.

        Args:
            expression: Expression text or a parsed expression.
            lookback: Restrict range selectors to this much history.

        Returns:
            A scalar, or ``(labels, value)`` pairs for vector results.

        Raises:
            ExpressionSyntaxError: expression does not parse.
            EvaluationError: The window is empty or the expression cannot be
                evaluated on it.
        """
        expr = parse(expression) if isinstance(expression, str) else expression
        window = self.since(lookback) if lookback is not None else self
        result: Value = evaluate(expr, window.snapshots)
        if isinstance(result, float):
            return result
        return [
            (dict(item.labels), item.value)
            for item in result
            if not isinstance(item, RangeSeries)
        ]


class Sampler:
    """Collects snapshots from its sources into a bounded ring buffer.

    Args:
        sources: Where samples come from (the in-process registry, remote
            scrape targets).
        lookback: Seconds of history to retain.
        max_snapshots: Hard cap on retained snapshots.
        clock: Time source used when sample() is called without a time.
    """

    def __init__(
        self,
        sources: Iterable[SnapshotSource],
        lookback: float = DEFAULT_LOOKBACK,
        max_snapshots: int = 10_000,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._sources = list(sources)
        self._buffer = SnapshotRingBuffer(lookback, max_snapshots)
        self._clock = clock

    @property
    def lookback(self) -> float:
        return self._buffer.lookback

    @property
    def sources(self) -> list[SnapshotSource]:
        return list(self._sources)

    def ensure_lookback(self, rules: Iterable[Rule] | float) -> float:
        """Grow the retention window to cover rules' ``for`` plus range selectors.

        Returns:
            The effective lookback in seconds.
        """
        if isinstance(rules, (int, float)):
            needed = float(rules)
        else:
            needed = max((rule.lookback for rule in rules), default=0.0)
        if needed > self._buffer.lookback:
            logger.info("Extending sampler lookback", extra={"lookback": needed})
        self._buffer.extend_lookback(needed)
        return self._buffer.lookback

    async def _collect(self, source: SnapshotSource, timestamp: float) -> Snapshot:
        try:
            return await source.collect(timestamp)
        except Exception:
            logger.exception(
                "Snapshot source failed", extra={"source": type(source).__name__}
            )
            return Snapshot(timestamp=timestamp, samples=())

    async def sample(self, now: float | None = None) -> SnapshotWindow:
        """Take one snapshot from every source and retain it.

        Returns:
            The window including the new snapshot.
        """
        timestamp = self._clock() if now is None else now
        parts = await asyncio.gather(
            *(self._collect(source, timestamp) for source in self._sources)
        )
        snapshot = Snapshot.merge(timestamp, list(parts))
        self._buffer.append(snapshot)
        logger.debug(
            "Snapshot taken",
            extra={"samples": len(snapshot.samples), "retained": len(self._buffer)},
        )
        return self.window()

    def window(self) -> SnapshotWindow:
        return SnapshotWindow(self._buffer.snapshots())

    def query(
        self, expression: str | Expr, lookback: float | None = None
    ) -> list[tuple[dict[str, str], float]] | float:
        """Evaluate an expression against the retained snapshots."""
        return self.window().query(expression, lookback)
