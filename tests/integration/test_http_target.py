"""Integration tests for scraping remote /metrics targets."""

import httpx
import pytest

from alertpipe.adapters.targets import HttpTargetSource
from alertpipe.core.models import MetricKind
from alertpipe.core.registry import MetricRegistry

pytestmark = [pytest.mark.integration, pytest.mark.tier(2)]

URL = "http://node-1:9100/metrics"


def _source(handler, **kwargs) -> HttpTargetSource:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpTargetSource(URL, job="node", client=client, **kwargs)


def _by_name(snapshot) -> dict[str, list]:
    index: dict[str, list] = {}
    for sample in snapshot.samples:
        index.setdefault(sample.name, []).append(sample)
    return index


@pytest.mark.tra("Targets.Http.Scrape")
async def test_scrapes_and_labels_samples() -> None:
    registry = MetricRegistry()
    registry.register("node_jobs_total", MetricKind.COUNTER, ["queue"])
    registry.increment_counter("node_jobs_total", ["q"], 7)
    seen_accept = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen_accept.append(request.headers["accept"])
        return httpx.Response(200, text=registry.render())

    snapshot = await _source(handler).collect(100.0)

    samples = _by_name(snapshot)
    assert samples["node_jobs_total"][0].label_dict() == {
        "instance": "node-1:9100",
        "job": "node",
        "queue": "q",
    }
    assert samples["node_jobs_total"][0].value == 7.0
    assert samples["up"][0].value == 1.0
    assert "scrape_duration_seconds" in samples
    assert snapshot.knows("node_jobs_total")
    assert seen_accept[0].startswith("text/plain")


@pytest.mark.tra("Targets.Http.Down")
@pytest.mark.parametrize(
    "handler",
    [
        lambda request: httpx.Response(503),
        lambda request: httpx.Response(200, text="this is not exposition format"),
    ],
)
async def test_failed_scrape_reports_up_zero(handler, captured_logs) -> None:
    snapshot = await _source(handler).collect(100.0)

    samples = _by_name(snapshot)
    assert [s.value for s in samples["up"]] == [0.0]
    assert samples["up"][0].label_dict() == {"instance": "node-1:9100", "job": "node"}
    assert set(samples) == {"up"}
    assert any(r.msg == "Scrape failed" for r in captured_logs.records)


async def test_unreachable_target_reports_up_zero() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectTimeout("timed out", request=request)

    snapshot = await _source(handler).collect(1.0)

    assert snapshot.select("up")[0].value == 0.0


async def test_explicit_instance_label() -> None:
    source = _source(lambda request: httpx.Response(200, text=""), instance="edge")

    snapshot = await source.collect(1.0)

    assert source.labels == {"job": "node", "instance": "edge"}
    assert snapshot.select("up")[0].label_dict()["instance"] == "edge"
