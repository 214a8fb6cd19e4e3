"""Integration tests for the webhook notifier against a mock HTTP transport."""

import json

import httpx
import pytest

from alertpipe.adapters.notifiers.webhook import WebhookNotifier, build_payload
from alertpipe.core.exceptions import DeliveryError
from alertpipe.core.models import AlertState, GroupKey
from alertpipe.core.ports import SendResult
from tests.helpers import make_alert

pytestmark = [pytest.mark.integration, pytest.mark.tier(2)]

GROUP = GroupKey("web.hook", (("alertname", "InstanceDown"),))
URL = "http://127.0.0.1:5001/"


def _notifier(handler) -> WebhookNotifier:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return WebhookNotifier(
        "web.hook", URL, client=client, external_url="http://alertpipe:9464"
    )


class TestBuildPayload:
    """Tests for build_payload()."""

    @pytest.mark.tra("Notifier.Webhook.Payload")
    def test_alertmanager_compatible_payload(self) -> None:
        alerts = [
            make_alert(instance="a", job="node", fired_at=60.0),
            make_alert(instance="b", job="node", fired_at=60.0),
        ]

        payload = build_payload(GROUP, alerts, "web.hook", "http://x")

        assert payload["version"] == "4"
        assert payload["status"] == "firing"
        assert payload["receiver"] == "web.hook"
        assert payload["groupKey"] == 'web.hook:{alertname="InstanceDown"}'
        assert payload["groupLabels"] == {"alertname": "InstanceDown"}
        assert payload["commonLabels"] == {"alertname": "InstanceDown", "job": "node"}
        assert payload["commonAnnotations"] == {"summary": "InstanceDown alert"}
        assert payload["externalURL"] == "http://x"
        assert [a["labels"]["instance"] for a in payload["alerts"]] == ["a", "b"]
        assert payload["alerts"][0]["startsAt"] == "1970-01-01T00:01:00Z"

    def test_all_resolved_group_is_resolved(self) -> None:
        alerts = [make_alert(state=AlertState.RESOLVED, resolved_at=120.0)]

        payload = build_payload(GROUP, alerts, "web.hook")

        assert payload["status"] == "resolved"
        assert payload["alerts"][0]["endsAt"] == "1970-01-01T00:02:00Z"


class TestWebhookNotifier:
    """Response codes map to delivery outcomes."""

    @pytest.mark.tra("Notifier.Webhook.Ack")
    async def test_posts_json_and_acknowledges_2xx(self) -> None:
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200)

        notifier = _notifier(handler)

        result = await notifier.send(GROUP, [make_alert(instance="a")], 60.0)

        assert result is SendResult.ACK
        (request,) = requests
        assert request.method == "POST"
        assert str(request.url) == URL
        assert request.headers["content-type"] == "application/json"
        body = json.loads(request.content)
        assert body["externalURL"] == "http://alertpipe:9464"
        assert body["alerts"][0]["labels"]["instance"] == "a"

    @pytest.mark.parametrize("status", [429, 500, 503])
    async def test_retry_later_statuses(self, status: int) -> None:
        notifier = _notifier(lambda request: httpx.Response(status))

        result = await notifier.send(GROUP, [make_alert()], 0.0)

        assert result is SendResult.RETRY_LATER

    @pytest.mark.tra("Notifier.Webhook.Rejected")
    @pytest.mark.parametrize("status", [400, 404])
    async def test_client_errors_are_not_retryable(self, status: int) -> None:
        notifier = _notifier(lambda request: httpx.Response(status))

        with pytest.raises(DeliveryError) as excinfo:
            await notifier.send(GROUP, [make_alert()], 0.0)

        assert excinfo.value.retryable is False
        assert str(status) in str(excinfo.value)

    async def test_transport_errors_are_retryable(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        notifier = _notifier(handler)

        with pytest.raises(DeliveryError) as excinfo:
            await notifier.send(GROUP, [make_alert()], 0.0)

        assert excinfo.value.retryable is True
        assert isinstance(excinfo.value.__cause__, httpx.ConnectError)

    async def test_shared_client_is_not_closed(self) -> None:
        transport = httpx.MockTransport(lambda request: httpx.Response(200))
        client = httpx.AsyncClient(transport=transport)
        notifier = WebhookNotifier("web.hook", URL, client=client)

        await notifier.aclose()

        assert not client.is_closed
        await client.aclose()

    async def test_owned_client_is_closed(self) -> None:
        notifier = WebhookNotifier("web.hook", URL)

        await notifier.aclose()

        assert notifier._client.is_closed
