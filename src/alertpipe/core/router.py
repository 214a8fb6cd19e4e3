"""Alert grouping, notification timers, deduplication and delivery.

Each group of alerts (alerts sharing the route's ``group_by`` label values)
is notified:

- ``group_wait`` after the group's first alert arrives,
- then at most once per ``group_interval`` while its alert set changes,
- and again after ``repeat_interval`` if it keeps firing unchanged.

Identical payloads in between are suppressed. Resolved alerts leave the
group once their resolution has been delivered; an emptied group is
discarded.
"""

import asyncio
import dataclasses
import logging
from collections.abc import Awaitable, Callable, Iterator
from dataclasses import dataclass, field

from alertpipe.core.config import RouterConfig
from alertpipe.core.exceptions import DeliveryError
from alertpipe.core.models import Alert, AlertBatch, AlertState, GroupKey, label_pairs
from alertpipe.core.ports import NotifierPort, SendResult
from alertpipe.core.registry import MetricRegistry

logger = logging.getLogger(__name__)

_Identity = frozenset[tuple[str, AlertState]]


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff for notification delivery."""

    max_attempts: int = 5
    initial_backoff: float = 0.5
    max_backoff: float = 30.0
    multiplier: float = 2.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    def delays(self) -> Iterator[float]:
        """Sleep durations between consecutive attempts."""
        delay = self.initial_backoff
        for _ in range(self.max_attempts - 1):
            yield min(delay, self.max_backoff)
            delay *= self.multiplier


@dataclass(frozen=True)
class Notification:
    group_key: GroupKey
    alerts: tuple[Alert, ...]
    timestamp: float

    @property
    def status(self) -> str:
        firing = any(a.state is AlertState.FIRING for a in self.alerts)
        return "firing" if firing else "resolved"


@dataclass
class _Group:
    key: GroupKey
    next_flush_at: float
    alerts: dict[str, Alert] = field(default_factory=dict)
    last_seen: dict[str, float] = field(default_factory=dict)
    last_sent: _Identity | None = None
    last_notified_at: float | None = None
    in_flight: bool = False

    def identity(self) -> _Identity:
        return frozenset((key, alert.state) for key, alert in self.alerts.items())

    def firing(self) -> bool:
        return any(alert.state is AlertState.FIRING for alert in self.alerts.values())


class AlertRouter:
    """Batches firing and resolved alerts into group notifications.

    Args:
        config: Route, receivers and resolve timeout.
        notifier: Receiver that notifications are sent to.
        retry: Backoff policy for failed deliveries.
        registry: If given, delivery counters are registered on it.
        sleep: Awaitable sleep used between retries.
    """

    def __init__(
        self,
        config: RouterConfig,
        notifier: NotifierPort,
        retry: RetryPolicy | None = None,
        registry: MetricRegistry | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._route = config.route
        self._resolve_timeout = config.resolve_timeout
        self._notifier = notifier
        self._retry = retry or RetryPolicy()
        self._sleep = sleep
        self._groups: dict[GroupKey, _Group] = {}
        self._tasks: set[asyncio.Task[None]] = set()
        self._sent = None
        self._failed = None
        if registry is not None:
            self._sent = registry.counter(
                "alertpipe_notifications_total",
                "Notifications delivered by receiver",
                ["receiver"],
            )
            self._failed = registry.counter(
                "alertpipe_notifications_failed_total",
                "Notifications dropped after exhausting retries",
                ["receiver"],
            )

    @property
    def groups(self) -> list[GroupKey]:
        return list(self._groups)

    def group_alerts(self, key: GroupKey) -> list[Alert]:
        return list(self._groups[key].alerts.values())

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    def group_key(self, labels: dict[str, str]) -> GroupKey:
        if self._route.group_by_all:
            grouped = dict(labels)
        else:
            grouped = {
                name: labels[name] for name in self._route.group_by if name in labels
            }
        return GroupKey(receiver=self._route.receiver, labels=label_pairs(grouped))

    def update(self, batch: AlertBatch, now: float | None = None) -> None:
        """Ingest the alerts of one engine batch.

        Only firing alerts and resolved alerts that had fired are routed;
        pending alerts and resolutions of alerts the router never saw are
        ignored.
        """
        now = batch.timestamp if now is None else now
        for alert in batch.alerts:
            if alert.state is AlertState.FIRING:
                self._ingest(alert, now)
            elif alert.state is AlertState.RESOLVED and alert.has_fired:
                group = self._groups.get(self.group_key(alert.labels))
                if group is not None and alert.fingerprint in group.alerts:
                    group.alerts[alert.fingerprint] = alert
                    group.last_seen[alert.fingerprint] = now
        self._expire(now)

    def _ingest(self, alert: Alert, now: float) -> None:
        key = self.group_key(alert.labels)
        group = self._groups.get(key)
        if group is None:
            group = _Group(key=key, next_flush_at=now + self._route.group_wait)
            self._groups[key] = group
            logger.debug("New alert group", extra={"group_key": str(key)})
        group.alerts[alert.fingerprint] = alert
        group.last_seen[alert.fingerprint] = now

    def _expire(self, now: float) -> None:
        for group in self._groups.values():
            for key, alert in list(group.alerts.items()):
                last_seen = group.last_seen.get(key, now)
                expired = now - last_seen >= self._resolve_timeout
                if alert.state is AlertState.FIRING and expired:
                    group.alerts[key] = dataclasses.replace(
                        alert,
                        state=AlertState.RESOLVED,
                        resolved_at=last_seen + self._resolve_timeout,
                    )
                    logger.info(
                        "Alert resolved by timeout",
                        extra={"group_key": str(group.key), "fingerprint": key},
                    )

    def due(self, now: float) -> list[Notification]:
        """Decide which groups must be notified now and mark them in flight."""
        notifications = []
        for key, group in list(self._groups.items()):
            if group.in_flight or now < group.next_flush_at:
                continue
            if not group.alerts or (group.last_sent is None and not group.firing()):
                del self._groups[key]
                continue
            if group.identity() == group.last_sent:
                assert group.last_notified_at is not None
                if now - group.last_notified_at < self._route.repeat_interval:
                    group.next_flush_at = now + self._route.group_interval
                    continue
            group.in_flight = True
            group.next_flush_at = now + self._route.group_interval
            alerts = sorted(group.alerts.values(), key=lambda a: label_pairs(a.labels))
            notifications.append(Notification(key, tuple(alerts), now))
        return notifications

    async def flush(self, now: float) -> list[Notification]:
        """Start delivery of every due notification in the background."""
        self._expire(now)
        notifications = self.due(now)
        for notification in notifications:
            task = asyncio.create_task(self._deliver(notification))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        return notifications

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for in-flight deliveries, cancelling any still running after timeout."""
        if not self._tasks:
            return
        _, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
        if pending:
            logger.warning(
                "Cancelling notifications still in flight",
                extra={"count": len(pending)},
            )
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

    async def _deliver(self, notification: Notification) -> None:
        delivered = False
        try:
            delivered = await self._send_with_retry(notification)
        except Exception:
            logger.exception(
                "Unexpected error delivering notification",
                extra={"group_key": str(notification.group_key)},
            )
        finally:
            self._complete(notification, delivered)

    async def _send_with_retry(self, notification: Notification) -> bool:
        delays = self._retry.delays()
        attempt = 0
        while True:
            attempt += 1
            try:
                result = await self._notifier.send(
                    notification.group_key, notification.alerts, notification.timestamp
                )
            except DeliveryError as exc:
                logger.warning(
                    "Notification attempt failed",
                    extra={
                        "group_key": str(notification.group_key),
                        "attempt": attempt,
                        "error": str(exc),
                    },
                )
                if not exc.retryable:
                    break
            else:
                if result is SendResult.ACK:
                    return True
                logger.warning(
                    "Receiver asked to retry later",
                    extra={
                        "group_key": str(notification.group_key),
                        "attempt": attempt,
                    },
                )
            delay = next(delays, None)
            if delay is None:
                break
            await self._sleep(delay)
        logger.error(
            "Dropping notification",
            extra={"group_key": str(notification.group_key), "attempts": attempt},
        )
        return False

    def _complete(self, notification: Notification, delivered: bool) -> None:
        receiver = notification.group_key.receiver
        if delivered and self._sent is not None:
            self._sent.labels(receiver).inc()
        if not delivered and self._failed is not None:
            self._failed.labels(receiver).inc()
        group = self._groups.get(notification.group_key)
        if group is None:
            return
        group.in_flight = False
        if not delivered:
            return
        for alert in notification.alerts:
            current = group.alerts.get(alert.fingerprint)
            if (
                alert.state is AlertState.RESOLVED
                and current is not None
                and current.state is AlertState.RESOLVED
            ):
                del group.alerts[alert.fingerprint]
                group.last_seen.pop(alert.fingerprint, None)
        group.last_sent = frozenset(
            (alert.fingerprint, alert.state)
            for alert in notification.alerts
            if alert.state is AlertState.FIRING
        )
        group.last_notified_at = notification.timestamp
        if not group.alerts:
            del self._groups[notification.group_key]
            logger.info("Alert group resolved", extra={"group_key": str(group.key)})
