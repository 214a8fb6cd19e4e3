"""Alertmanager-compatible webhook notifier."""

import logging
from collections.abc import Mapping, Sequence
from typing import Any

import httpx

from alertpipe.core.encoding.ndjson import alert_to_dict
from alertpipe.core.exceptions import DeliveryError
from alertpipe.core.models import Alert, AlertState, GroupKey
from alertpipe.core.ports import SendResult

logger = logging.getLogger(__name__)

PAYLOAD_VERSION = "4"


def _common(maps: Sequence[Mapping[str, str]]) -> dict[str, str]:
    if not maps:
        return {}
    common = dict(maps[0])
    for other in maps[1:]:
        common = {k: v for k, v in common.items() if other.get(k) == v}
    return common


def build_payload(
    group_key: GroupKey,
    alerts: Sequence[Alert],
    receiver: str,
    external_url: str = "",
) -> dict[str, Any]:
    """Build the webhook JSON body for one group notification.

    The group is ``firing`` while any of its alerts fires and ``resolved``
    once all of them have resolved.
    """
    firing = any(alert.state is AlertState.FIRING for alert in alerts)
    return {
        "version": PAYLOAD_VERSION,
        "status": "firing" if firing else "resolved",
        "receiver": receiver,
        "groupKey": str(group_key),
        "groupLabels": group_key.label_dict(),
        "commonLabels": _common([alert.labels for alert in alerts]),
        "commonAnnotations": _common([alert.annotations for alert in alerts]),
        "externalURL": external_url,
        "alerts": [alert_to_dict(alert) for alert in alerts],
    }


class WebhookNotifier:
    """Posts group notifications as JSON to a webhook URL.

    Responses map to delivery outcomes:

    - 2xx: acknowledged.
    - 429 and 5xx: the receiver asked to retry later.
    - other 4xx: non-retryable DeliveryError.
    - transport errors and timeouts: retryable DeliveryError.

    Args:
        name: Receiver name reported in the payload.
        url: Webhook endpoint.
        client: Shared httpx.AsyncClient; one is created (and owned) when
            omitted.
        timeout: Per-request timeout in seconds.
        external_url: Value of the payload's ``externalURL`` field.
    """

    def __init__(
        self,
        name: str,
        url: str,
        client: httpx.AsyncClient | None = None,
        timeout: float = 10.0,
        external_url: str = "",
    ) -> None:
        self.name = name
        self.url = url
        self._timeout = timeout
        self._external_url = external_url
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def send(
        self, group_key: GroupKey, alerts: Sequence[Alert], timestamp: float
    ) -> SendResult:
        payload = build_payload(group_key, alerts, self.name, self._external_url)
        try:
            response = await self._client.post(
                self.url, json=payload, timeout=self._timeout
            )
        except httpx.HTTPError as exc:
            raise DeliveryError(f"webhook {self.url} unreachable: {exc}") from exc

        status = response.status_code
        if 200 <= status < 300:
            logger.info(
                "Webhook notification sent",
                extra={
                    "receiver": self.name,
                    "group_key": str(group_key),
                    "alerts": len(alerts),
                    "status": payload["status"],
                },
            )
            return SendResult.ACK
        if status == 429 or status >= 500:
            return SendResult.RETRY_LATER
        raise DeliveryError(
            f"webhook {self.url} rejected notification with HTTP {status}",
            retryable=False,
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
