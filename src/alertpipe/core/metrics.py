"""Metric handles bound to a MetricRegistry."""

import time
from collections.abc import Generator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from alertpipe.core.registry import MetricRegistry

DEFAULT_HISTOGRAM_BUCKETS = [0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10]


@dataclass
class TimerResult:
    """Result object for the Histogram.time() context manager."""

    elapsed: float | None = None


@dataclass(frozen=True)
class BoundCounter:
    """A counter series with its label values already chosen."""

    registry: "MetricRegistry"
    name: str
    label_values: tuple[str, ...]

    def inc(self, delta: float = 1.0) -> None:
        """Increment the series.

        Args:
            delta: Increment value (default: 1.0, must be >= 0)
        """
        self.registry.increment_counter(self.name, self.label_values, delta)


@dataclass(frozen=True)
class BoundHistogram:
    """A histogram series with its label values already chosen."""

    registry: "MetricRegistry"
    name: str
    label_values: tuple[str, ...]

    def observe(self, value: float) -> None:
        self.registry.observe_histogram(self.name, self.label_values, value)

    @contextmanager
    def time(self) -> Generator[TimerResult]:
        """Context manager that observes the elapsed time on exit.

        The observation is recorded on every exit path, including when the
        body raises.

        Yields:
            TimerResult whose ``elapsed`` is set once the block exits
        """
        result = TimerResult()
        start = time.perf_counter()
        try:
            yield result
        finally:
            result.elapsed = time.perf_counter() - start
            self.observe(result.elapsed)


@dataclass(frozen=True)
class Counter:
    """Handle to a registered counter.

    Example:
        ```python
        requests = registry.counter("jobs_total", "Jobs run", ["queue"])
        requests.labels("default").inc()
        ```
    """

    registry: "MetricRegistry"
    name: str

    def labels(self, *label_values: object) -> BoundCounter:
        return BoundCounter(
            self.registry, self.name, tuple(str(v) for v in label_values)
        )

    def inc(self, label_values: Sequence[object] = (), delta: float = 1.0) -> None:
        self.registry.increment_counter(self.name, label_values, delta)


@dataclass(frozen=True)
class Histogram:
    """Handle to a registered histogram."""

    registry: "MetricRegistry"
    name: str

    def labels(self, *label_values: object) -> BoundHistogram:
        return BoundHistogram(
            self.registry, self.name, tuple(str(v) for v in label_values)
        )

    def observe(self, label_values: Sequence[object], value: float) -> None:
        self.registry.observe_histogram(self.name, label_values, value)
