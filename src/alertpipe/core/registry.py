"""Thread-safe metric registry.

The registry owns metric definitions and the live value of every series.
Each series carries its own lock, so request threads writing different
series never contend, and a snapshot copies each series under that lock so
it never observes a half-applied histogram observation.
"""

import bisect
import math
import re
import threading
import time
from collections.abc import Callable, Iterable, Sequence

from alertpipe.core.encoding.prometheus import encode_families, format_value
from alertpipe.core.exceptions import (
    DuplicateMetric,
    LabelMismatch,
    RegistrationError,
    UnknownSeries,
)
from alertpipe.core.metrics import DEFAULT_HISTOGRAM_BUCKETS, Counter, Histogram
from alertpipe.core.models import (
    HistogramValue,
    MetricDefinition,
    MetricFamily,
    MetricKind,
    Sample,
    SeriesValue,
    Snapshot,
    label_pairs,
)

_METRIC_NAME_RE = re.compile(r"^[a-zA-Z_:][a-zA-Z0-9_:]*$")
_LABEL_NAME_RE = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")


class _CounterSeries:
    __slots__ = ("_lock", "_value")

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._value = 0.0

    def inc(self, delta: float) -> None:
        with self._lock:
            self._value += delta

    def copy(self) -> float:
        with self._lock:
            return self._value


class _HistogramSeries:
    __slots__ = ("_bounds", "_count", "_counts", "_lock", "_sum")

    def __init__(self, bounds: tuple[float, ...]) -> None:
        self._lock = threading.Lock()
        self._bounds = bounds
        self._counts = [0] * len(bounds)
        self._sum = 0.0
        self._count = 0

    def observe(self, value: float) -> None:
        first = bisect.bisect_left(self._bounds, value)
        with self._lock:
            for index in range(first, len(self._counts)):
                self._counts[index] += 1
            self._sum += value
            self._count += 1

    def copy(self) -> HistogramValue:
        with self._lock:
            return HistogramValue(
                bucket_counts=tuple(self._counts), sum=self._sum, count=self._count
            )


class _Metric:
    """A registered metric and its series, keyed by label-value tuple."""

    def __init__(self, definition: MetricDefinition) -> None:
        self.definition = definition
        self._series: dict[tuple[str, ...], _CounterSeries | _HistogramSeries] = {}
        self._lock = threading.Lock()

    def _label_values(self, label_values: Sequence[object]) -> tuple[str, ...]:
        if isinstance(label_values, (str, bytes)):
            raise LabelMismatch(
                f"{self.definition.name}: label values must be a sequence, "
                f"got {type(label_values).__name__}"
            )
        values = tuple(str(value) for value in label_values)
        expected = len(self.definition.label_names)
        if len(values) != expected:
            raise LabelMismatch(
                f"{self.definition.name}: expected {expected} label value(s) "
                f"for {list(self.definition.label_names)}, got {len(values)}"
            )
        return values

    def series(
        self, label_values: Sequence[object]
    ) -> _CounterSeries | _HistogramSeries:
        values = self._label_values(label_values)
        found = self._series.get(values)
        if found is not None:
            return found
        with self._lock:
            found = self._series.get(values)
            if found is None:
                if self.definition.kind is MetricKind.COUNTER:
                    found = _CounterSeries()
                else:
                    found = _HistogramSeries(self.definition.buckets)
                self._series[values] = found
            return found

    def copy(self) -> MetricFamily:
        with self._lock:
            items = sorted(self._series.items())
        return MetricFamily(
            definition=self.definition,
            series=tuple(
                SeriesValue(label_values=values, value=series.copy())
                for values, series in items
            ),
        )


def _validate_definition(definition: MetricDefinition) -> None:
    if not _METRIC_NAME_RE.match(definition.name):
        raise RegistrationError(f"invalid metric name {definition.name!r}")
    if len(set(definition.label_names)) != len(definition.label_names):
        raise RegistrationError(f"{definition.name}: duplicate label names")
    for label in definition.label_names:
        if not _LABEL_NAME_RE.match(label) or label.startswith("__"):
            raise RegistrationError(f"{definition.name}: invalid label name {label!r}")
    if definition.kind is MetricKind.HISTOGRAM:
        if "le" in definition.label_names:
            raise RegistrationError(
                f"{definition.name}: 'le' is reserved for histograms"
            )
        bounds = definition.buckets
        if not bounds:
            raise RegistrationError(
                f"{definition.name}: histogram needs at least one bucket"
            )
        if any(math.isnan(b) for b in bounds):
            raise RegistrationError(f"{definition.name}: bucket bounds must be numbers")
        if any(lower >= upper for lower, upper in zip(bounds, bounds[1:])):
            raise RegistrationError(
                f"{definition.name}: buckets must be sorted in strictly ascending order"
            )


def _normalize_buckets(buckets: Iterable[float] | None) -> tuple[float, ...]:
    bounds = tuple(
        float(b) for b in (DEFAULT_HISTOGRAM_BUCKETS if buckets is None else buckets)
    )
    if bounds and math.isinf(bounds[-1]) and bounds[-1] > 0:
        bounds = bounds[:-1]
    return bounds


def flatten(families: Iterable[MetricFamily], timestamp: float) -> Snapshot:
    """Flatten metric families into the sample view used by expressions."""
    samples: list[Sample] = []
    names: set[str] = set()
    for family in families:
        definition = family.definition
        if definition.kind is MetricKind.COUNTER:
            names.add(definition.name)
        else:
            names.update(
                f"{definition.name}{suffix}"
                for suffix in ("", "_bucket", "_sum", "_count")
            )
        for series in family.series:
            labels = dict(zip(definition.label_names, series.label_values))
            value = series.value
            if isinstance(value, HistogramValue):
                for bound, count in zip(definition.buckets, value.bucket_counts):
                    bucket_labels = {**labels, "le": format_value(bound)}
                    samples.append(
                        Sample(
                            f"{definition.name}_bucket",
                            label_pairs(bucket_labels),
                            count,
                        )
                    )
                inf_labels = {**labels, "le": "+Inf"}
                samples.append(
                    Sample(
                        f"{definition.name}_bucket",
                        label_pairs(inf_labels),
                        value.count,
                    )
                )
                pairs = label_pairs(labels)
                samples.append(Sample(f"{definition.name}_sum", pairs, value.sum))
                samples.append(Sample(f"{definition.name}_count", pairs, value.count))
            else:
                samples.append(Sample(definition.name, label_pairs(labels), value))
    return Snapshot(
        timestamp=timestamp, samples=tuple(samples), metric_names=frozenset(names)
    )


class MetricRegistry:
    """Owns counter and histogram definitions and their live series.

    The registry is an explicitly constructed object; pass it to the
    middleware, the sampler and anything else that records or reads metrics.

    Example:
        ```python
        registry = MetricRegistry()
        registry.register("jobs_total", MetricKind.COUNTER, ["queue"])
        registry.increment_counter("jobs_total", ["default"])
        print(registry.render())
        ```
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._metrics: dict[str, _Metric] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def register(
        self,
        name: str,
        kind: MetricKind,
        label_names: Sequence[str] = (),
        help: str = "",
        buckets: Iterable[float] | None = None,
    ) -> MetricDefinition:
        """Register a metric definition.

        Re-registering an identical definition is a no-op and returns the
        existing definition.

        Raises:
            DuplicateMetric: The name is taken by a different definition.
            RegistrationError: The definition itself is invalid.
        """
        kind = MetricKind(kind)
        definition = MetricDefinition(
            name=name,
            kind=kind,
            label_names=tuple(label_names),
            help=help,
            buckets=_normalize_buckets(buckets) if kind is MetricKind.HISTOGRAM else (),
        )
        _validate_definition(definition)
        with self._lock:
            existing = self._metrics.get(name)
            if existing is not None:
                if existing.definition.same_shape(definition):
                    return existing.definition
                raise DuplicateMetric(
                    f"metric {name!r} already registered as {existing.definition.kind} "
                    f"with labels {list(existing.definition.label_names)}"
                )
            self._metrics[name] = _Metric(definition)
        return definition

    def unregister(self, name: str) -> None:
        with self._lock:
            self._metrics.pop(name, None)

    def clear(self) -> None:
        """Drop every definition and series."""
        with self._lock:
            self._metrics.clear()

    def definition(self, name: str) -> MetricDefinition | None:
        metric = self._metrics.get(name)
        return metric.definition if metric is not None else None

    def __contains__(self, name: object) -> bool:
        return name in self._metrics

    def _metric(self, name: str, kind: MetricKind) -> _Metric:
        metric = self._metrics.get(name)
        if metric is None:
            raise UnknownSeries(f"no metric registered under {name!r}")
        if metric.definition.kind is not kind:
            raise UnknownSeries(
                f"metric {name!r} is a {metric.definition.kind}, not a {kind}"
            )
        return metric

    def increment_counter(
        self, name: str, label_values: Sequence[object] = (), delta: float = 1.0
    ) -> None:
        """Add delta (>= 0) to a counter series, creating it on first use."""
        if delta < 0 or math.isnan(delta):
            raise ValueError(f"counter {name!r} can only increase, got delta={delta}")
        series = self._metric(name, MetricKind.COUNTER).series(label_values)
        series.inc(delta)  # type: ignore[union-attr]

    def observe_histogram(
        self, name: str, label_values: Sequence[object], value: float
    ) -> None:
        """Record one observation into a histogram series."""
        if math.isnan(value):
            raise ValueError(f"histogram {name!r} cannot observe NaN")
        series = self._metric(name, MetricKind.HISTOGRAM).series(label_values)
        series.observe(value)  # type: ignore[union-attr]

    def collect(self) -> list[MetricFamily]:
        """Copy every metric family, sorted by name then label values."""
        with self._lock:
            metrics = sorted(self._metrics.values(), key=lambda m: m.definition.name)
        return [metric.copy() for metric in metrics]

    def snapshot(self) -> Snapshot:
        """Immutable copy of all series, stamped with the capture time."""
        return flatten(self.collect(), self._clock())

    def render(self) -> str:
        """Render all metrics in the Prometheus text exposition format."""
        return encode_families(self.collect())

    def counter(
        self, name: str, help: str = "", label_names: Sequence[str] = ()
    ) -> Counter:
        """Register a counter (idempotently) and return a handle to it."""
        self.register(name, MetricKind.COUNTER, label_names, help=help)
        return Counter(self, name)

    def histogram(
        self,
        name: str,
        help: str = "",
        label_names: Sequence[str] = (),
        buckets: Iterable[float] | None = None,
    ) -> Histogram:
        """Register a histogram (idempotently) and return a handle to it."""
        self.register(
            name, MetricKind.HISTOGRAM, label_names, help=help, buckets=buckets
        )
        return Histogram(self, name)
