"""Shared builders and fakes for the test suite."""

import asyncio
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from alertpipe.core.models import (
    Alert,
    AlertState,
    GroupKey,
    Sample,
    Snapshot,
    label_pairs,
)
from alertpipe.core.ports import SendResult

SeriesSpec = dict[str, list[tuple[dict[str, str], float]]]


def run_async(coro: Any) -> Any:
    """Run a coroutine in a new event loop (for sync test helpers)."""
    return asyncio.run(coro)


def make_snapshot(timestamp: float, series: SeriesSpec) -> Snapshot:
    """Build a snapshot from ``{name: [(labels, value), ...]}``."""
    samples = [
        Sample(name, label_pairs(labels), value)
        for name, points in series.items()
        for labels, value in points
    ]
    return Snapshot(
        timestamp=timestamp, samples=tuple(samples), metric_names=frozenset(series)
    )


def make_alert(
    name: str = "InstanceDown",
    state: AlertState = AlertState.FIRING,
    active_at: float = 0.0,
    fired_at: float | None = 0.0,
    resolved_at: float | None = None,
    value: float = 0.0,
    **labels: str,
) -> Alert:
    return Alert(
        name=name,
        labels={"alertname": name, **labels},
        annotations={"summary": f"{name} alert"},
        state=state,
        active_at=active_at,
        value=value,
        fired_at=fired_at if state is not AlertState.PENDING else None,
        resolved_at=resolved_at,
    )


@dataclass
class SentNotification:
    group_key: GroupKey
    alerts: tuple[Alert, ...]
    timestamp: float


@dataclass
class RecordingNotifier:
    """NotifierPort fake that records calls and replays scripted outcomes.

    ``outcomes`` is consumed one item per call; a SendResult is returned and
    an exception is raised. Once exhausted every call is acknowledged.
    """

    name: str = "web.hook"
    outcomes: list[SendResult | Exception] = field(default_factory=list)
    sent: list[SentNotification] = field(default_factory=list)
    attempts: int = 0

    async def send(
        self, group_key: GroupKey, alerts: Sequence[Alert], timestamp: float
    ) -> SendResult:
        self.attempts += 1
        outcome = self.outcomes.pop(0) if self.outcomes else SendResult.ACK
        if isinstance(outcome, Exception):
            raise outcome
        if outcome is SendResult.ACK:
            self.sent.append(SentNotification(group_key, tuple(alerts), timestamp))
        return outcome


@dataclass
class RecordingSleep:
    """Stand-in for asyncio.sleep that records requested delays."""

    delays: list[float] = field(default_factory=list)

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@dataclass
class StaticSource:
    """SnapshotSource fake whose samples are swapped in by the test."""

    series: SeriesSpec = field(default_factory=dict)

    async def collect(self, timestamp: float) -> Snapshot:
        return make_snapshot(timestamp, self.series)
