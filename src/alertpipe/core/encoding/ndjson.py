"""JSON encoders for observability events and alerts."""

import json
import math
from collections.abc import Iterable
from datetime import UTC, datetime
from typing import Any

from alertpipe.core.encoding.prometheus import format_value
from alertpipe.core.models import Alert, AlertState, LogEntry


def encode_logs(entries: Iterable[LogEntry]) -> str:
    """Encode log entries to newline-delimited JSON.

    Args:
        entries: An iterable of LogEntry objects.

    Returns:
        NDJSON string with one JSON object per line.
        Empty string if no entries.
    """
    lines = [
        json.dumps(
            {
                "timestamp": entry.timestamp,
                "level": entry.level,
                "message": entry.message,
                "attributes": entry.attributes,
            }
        )
        for entry in entries
    ]

    if not lines:
        return ""

    return "\n".join(lines) + "\n"


def rfc3339(timestamp: float) -> str:
    """Format a Unix timestamp as an RFC 3339 UTC string."""
    moment = datetime.fromtimestamp(timestamp, UTC)
    return moment.isoformat().replace("+00:00", "Z")


def alert_to_dict(alert: Alert) -> dict[str, Any]:
    """Webhook representation of one alert.

    ``endsAt`` is only present once the alert has resolved.
    """
    status = "resolved" if alert.state is AlertState.RESOLVED else "firing"
    starts_at = alert.fired_at if alert.fired_at is not None else alert.active_at
    item: dict[str, Any] = {
        "status": status,
        "labels": dict(alert.labels),
        "annotations": dict(alert.annotations),
        "startsAt": rfc3339(starts_at),
        "fingerprint": alert.fingerprint,
    }
    if status == "resolved" and alert.resolved_at is not None:
        item["endsAt"] = rfc3339(alert.resolved_at)
    return item


def _json_number(value: float) -> float | str:
    """JSON has no NaN or infinities, so those are written as strings."""
    return value if math.isfinite(value) else format_value(value)


def encode_alerts(alerts: Iterable[Alert]) -> str:
    """Encode current engine alerts (any state) as a JSON array."""
    return json.dumps(
        [
            {
                "name": alert.name,
                "state": str(alert.state),
                "labels": alert.labels,
                "annotations": alert.annotations,
                "activeAt": rfc3339(alert.active_at),
                "value": _json_number(alert.value),
            }
            for alert in alerts
        ],
        allow_nan=False,
    )
