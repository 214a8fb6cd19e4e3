"""Prometheus text exposition format encoder and parser."""

import math
import re
from collections.abc import Iterable

from alertpipe.core.models import HistogramValue, MetricFamily, MetricKind, Sample

CONTENT_TYPE = "text/plain; version=0.0.4; charset=utf-8"

_SAMPLE_RE = re.compile(
    r"^(?P<name>[a-zA-Z_:][a-zA-Z0-9_:]*)"
    r"(?:\{(?P<labels>.*)\})?"
    r"\s+(?P<value>\S+)"
    r"(?:\s+(?P<timestamp>-?\d+))?\s*$"
)
_LABEL_RE = re.compile(
    r'\s*(?P<name>[a-zA-Z_][a-zA-Z0-9_]*)\s*=\s*"(?P<value>(?:[^"\\]|\\.)*)"\s*(?:,|$)'
)
_UNESCAPE_RE = re.compile(r"\\(.)")


def format_value(value: float) -> str:
    """Format a sample value or bucket bound the way Prometheus clients do."""
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"
    if float(value).is_integer() and abs(value) < 1e15:
        return str(int(value))
    return repr(float(value))


def _escape_label_value(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


def _escape_help(text: str) -> str:
    return text.replace("\\", "\\\\").replace("\n", "\\n")


def _format_labels(pairs: Iterable[tuple[str, str]]) -> str:
    inner = ",".join(f'{name}="{_escape_label_value(value)}"' for name, value in pairs)
    return f"{{{inner}}}" if inner else ""


def encode_families(families: Iterable[MetricFamily]) -> str:
    """Encode metric families to Prometheus text format.

    Families are emitted in name order and series in label-value order, so
    the output is deterministic for a given registry state.

    Args:
        families: Metric families, typically from MetricRegistry.collect().

    Returns:
        Exposition text ending in a newline, or an empty string if there are
        no families.
    """
    lines: list[str] = []
    for family in sorted(families, key=lambda f: f.name):
        definition = family.definition
        if definition.help:
            lines.append(f"# HELP {definition.name} {_escape_help(definition.help)}")
        lines.append(f"# TYPE {definition.name} {definition.kind}")
        for series in sorted(family.series, key=lambda s: s.label_values):
            pairs = list(zip(definition.label_names, series.label_values))
            value = series.value
            if isinstance(value, HistogramValue):
                for bound, count in zip(definition.buckets, value.bucket_counts):
                    labels = _format_labels([*pairs, ("le", format_value(bound))])
                    lines.append(f"{definition.name}_bucket{labels} {count}")
                labels = _format_labels([*pairs, ("le", "+Inf")])
                lines.append(f"{definition.name}_bucket{labels} {value.count}")
                lines.append(
                    f"{definition.name}_sum{_format_labels(pairs)} "
                    f"{format_value(value.sum)}"
                )
                lines.append(
                    f"{definition.name}_count{_format_labels(pairs)} {value.count}"
                )
            else:
                lines.append(
                    f"{definition.name}{_format_labels(pairs)} {format_value(value)}"
                )

    if not lines:
        return ""

    return "\n".join(lines) + "\n"


def _parse_labels(text: str, line_number: int) -> tuple[tuple[str, str], ...]:
    labels: dict[str, str] = {}
    position = 0
    text = text.strip()
    while position < len(text):
        match = _LABEL_RE.match(text, position)
        if match is None:
            raise ValueError(f"line {line_number}: malformed labels {{{text}}}")
        value = _UNESCAPE_RE.sub(
            lambda m: "\n" if m.group(1) == "n" else m.group(1), match.group("value")
        )
        labels[match.group("name")] = value
        position = match.end()
    return tuple(sorted(labels.items()))


def parse_text(text: str) -> tuple[list[Sample], set[str]]:
    """Parse Prometheus text exposition format.

    Args:
        text: Body of a /metrics response.

    Returns:
        Tuple of (samples, metric names declared or seen). A histogram or
        summary declared via ``# TYPE`` contributes its suffixed names.

    Raises:
        ValueError: A line is not valid exposition syntax.
    """
    samples: list[Sample] = []
    names: set[str] = set()
    for line_number, raw in enumerate(text.splitlines(), start=1):
        line = raw.strip()
        if not line:
            continue
        if line.startswith("#"):
            parts = line.split(None, 3)
            if len(parts) >= 4 and parts[1] == "TYPE":
                name, kind = parts[2], parts[3]
                names.add(name)
                if kind in (MetricKind.HISTOGRAM, "summary"):
                    names.update(f"{name}{s}" for s in ("_bucket", "_sum", "_count"))
            continue
        match = _SAMPLE_RE.match(line)
        if match is None:
            raise ValueError(f"line {line_number}: malformed sample {line!r}")
        try:
            value = float(match.group("value"))
        except ValueError as exc:
            raise ValueError(
                f"line {line_number}: bad value {match.group('value')!r}"
            ) from exc
        labels = _parse_labels(match.group("labels") or "", line_number)
        samples.append(Sample(match.group("name"), labels, value))
        names.add(match.group("name"))
    return samples, names
