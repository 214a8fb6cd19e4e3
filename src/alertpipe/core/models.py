"""Core domain models for metrics, snapshots and alerts."""

import enum
import hashlib
from collections.abc import Iterable
from dataclasses import dataclass, field
from functools import cached_property

LabelPairs = tuple[tuple[str, str], ...]


def label_pairs(labels: dict[str, str]) -> LabelPairs:
    """Return labels as a sorted tuple of (name, value) pairs."""
    return tuple(sorted(labels.items()))


def fingerprint(labels: dict[str, str]) -> str:
    """Stable 16 hex digit identity for a label set."""
    digest = hashlib.sha256()
    for name, value in label_pairs(labels):
        digest.update(name.encode())
        digest.update(b"\xff")
        digest.update(value.encode())
        digest.update(b"\xff")
    return digest.hexdigest()[:16]


@dataclass(frozen=True)
class LogEntry:
    """A structured log entry.

    Attributes:
        timestamp: Unix timestamp in seconds.
        level: Log level (e.g., INFO, ERROR, DEBUG).
        message: The log message.
        attributes: Additional structured fields.
    """

    timestamp: float
    level: str
    message: str
    attributes: dict[str, str | int | float | bool] = field(default_factory=dict)


class MetricKind(enum.StrEnum):
    COUNTER = "counter"
    HISTOGRAM = "histogram"


@dataclass(frozen=True)
class MetricDefinition:
    """Static description of a registered metric.

    Attributes:
        name: Metric name (e.g., http_requests_total).
        kind: Counter or histogram.
        label_names: Ordered label names every series must supply.
        help: Human readable description for the exposition HELP line.
        buckets: Ascending upper bounds (histograms only, +Inf implied).
    """

    name: str
    kind: MetricKind
    label_names: tuple[str, ...]
    help: str = ""
    buckets: tuple[float, ...] = ()

    def same_shape(self, other: "MetricDefinition") -> bool:
        return (
            self.kind == other.kind
            and self.label_names == other.label_names
            and self.buckets == other.buckets
        )


@dataclass(frozen=True)
class HistogramValue:
    """Point-in-time copy of a histogram series.

    Attributes:
        bucket_counts: Cumulative count per bound, aligned with the
            definition's buckets.
        sum: Sum of all observed values.
        count: Number of observations (the implicit +Inf bucket).
    """

    bucket_counts: tuple[int, ...]
    sum: float
    count: int


@dataclass(frozen=True)
class SeriesValue:
    label_values: tuple[str, ...]
    value: float | HistogramValue


@dataclass(frozen=True)
class MetricFamily:
    """A metric definition together with copies of all its series."""

    definition: MetricDefinition
    series: tuple[SeriesValue, ...]

    @property
    def name(self) -> str:
        return self.definition.name


@dataclass(frozen=True)
class Sample:
    """A single flattened sample as seen by the expression evaluator.

    Histograms are flattened into ``_bucket``/``_sum``/``_count`` samples.
    """

    name: str
    labels: LabelPairs
    value: float

    def label_dict(self) -> dict[str, str]:
        return dict(self.labels)


@dataclass(frozen=True)
class Snapshot:
    """Immutable point-in-time copy of all samples.

    Attributes:
        timestamp: Capture time (Unix seconds).
        samples: Every sample captured at this time.
        metric_names: Sample names known to the producer, including names
            that currently have no series.
    """

    timestamp: float
    samples: tuple[Sample, ...]
    metric_names: frozenset[str] = frozenset()

    @cached_property
    def _by_name(self) -> dict[str, list[Sample]]:
        index: dict[str, list[Sample]] = {}
        for sample in self.samples:
            index.setdefault(sample.name, []).append(sample)
        return index

    def select(self, name: str) -> list[Sample]:
        """Return all samples with the given name."""
        return list(self._by_name.get(name, ()))

    def knows(self, name: str) -> bool:
        return name in self.metric_names or name in self._by_name

    @classmethod
    def merge(cls, timestamp: float, parts: list["Snapshot"]) -> "Snapshot":
        samples: list[Sample] = []
        names: set[str] = set()
        for part in parts:
            samples.extend(part.samples)
            names.update(part.metric_names)
        return cls(
            timestamp=timestamp, samples=tuple(samples), metric_names=frozenset(names)
        )


class AlertState(enum.StrEnum):
    INACTIVE = "inactive"
    PENDING = "pending"
    FIRING = "firing"
    RESOLVED = "resolved"


@dataclass(frozen=True)
class Alert:
    """An alert instance for one rule and one label combination.

    Attributes:
        name: The alerting rule name (also the ``alertname`` label).
        labels: Series labels merged with rule labels and ``alertname``.
        annotations: Rendered annotation templates.
        state: Lifecycle phase at the time the batch was produced.
        active_at: When the instance entered pending.
        value: Expression value at the last positive evaluation.
        fired_at: When the instance started firing, if it ever did.
        resolved_at: When the instance stopped matching, if it did.
    """

    name: str
    labels: dict[str, str]
    annotations: dict[str, str]
    state: AlertState
    active_at: float
    value: float
    fired_at: float | None = None
    resolved_at: float | None = None

    @property
    def fingerprint(self) -> str:
        return fingerprint(self.labels)

    @property
    def has_fired(self) -> bool:
        return self.fired_at is not None


@dataclass(frozen=True)
class AlertBatch:
    """Alerts handed from the rule engine to the router at a tick boundary."""

    timestamp: float
    alerts: tuple[Alert, ...] = ()

    def followed_by(self, newer: "AlertBatch") -> "AlertBatch":
        """Combine with a newer batch the router has not seen either.

        The newer batch wins for every alert it reports. Resolved alerts
        only present here are carried forward, since the engine reports a
        resolution exactly once.
        """
        reported = {alert.fingerprint for alert in newer.alerts}
        carried = tuple(
            alert
            for alert in self.alerts
            if alert.state is AlertState.RESOLVED
            and alert.fingerprint not in reported
        )
        return AlertBatch(timestamp=newer.timestamp, alerts=newer.alerts + carried)


@dataclass(frozen=True)
class GroupKey:
    """Identity of a notification group."""

    receiver: str
    labels: LabelPairs

    def label_dict(self) -> dict[str, str]:
        return dict(self.labels)

    def __str__(self) -> str:
        inner = ",".join(f'{name}="{value}"' for name, value in self.labels)
        return f"{self.receiver}:{{{inner}}}"


def target_labels(job: str | None, instance: str | None) -> dict[str, str]:
    """The ``job``/``instance`` labels identifying a sampled target."""
    labels = {}
    if job:
        labels["job"] = job
    if instance:
        labels["instance"] = instance
    return labels


def with_target_labels(
    samples: Iterable[Sample], labels: dict[str, str]
) -> list[Sample]:
    """Add target labels to every sample that does not already carry them."""
    labelled = []
    for sample in samples:
        merged = sample.label_dict()
        for name, value in labels.items():
            merged.setdefault(name, value)
        labelled.append(Sample(sample.name, label_pairs(merged), sample.value))
    return labelled
