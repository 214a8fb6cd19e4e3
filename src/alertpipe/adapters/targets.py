"""Remote scrape targets.

A target that cannot be scraped still yields a snapshot: its ``up`` sample
drops to 0, which is what the InstanceDown rule watches.
"""

import logging
import time
from urllib.parse import urlsplit

import httpx

from alertpipe.core.encoding.prometheus import parse_text
from alertpipe.core.models import Sample, Snapshot, target_labels, with_target_labels

logger = logging.getLogger(__name__)

SCRAPE_ACCEPT = "text/plain;version=0.0.4;q=1,*/*;q=0.1"


class HttpTargetSource:
    """Scrapes a remote ``/metrics`` endpoint over HTTP.

    Args:
        url: Full URL of the target's metrics endpoint.
        job: ``job`` label added to the target's samples.
        client: Shared httpx.AsyncClient; one is created (and owned) when
            omitted.
        timeout: Per-scrape timeout in seconds.
        instance: ``instance`` label; defaults to the URL's host:port.
    """

    def __init__(
        self,
        url: str,
        job: str = "alertpipe",
        client: httpx.AsyncClient | None = None,
        timeout: float = 10.0,
        instance: str | None = None,
    ) -> None:
        self.url = url
        self._timeout = timeout
        self._labels = target_labels(job, instance or urlsplit(url).netloc)
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    @property
    def labels(self) -> dict[str, str]:
        return dict(self._labels)

    async def collect(self, timestamp: float) -> Snapshot:
        start = time.perf_counter()
        try:
            response = await self._client.get(
                self.url, headers={"Accept": SCRAPE_ACCEPT}, timeout=self._timeout
            )
            response.raise_for_status()
            samples, names = parse_text(response.text)
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning(
                "Scrape failed", extra={"target": self.url, "error": str(exc)}
            )
            return self._snapshot(timestamp, [Sample("up", (), 0.0)], set())
        duration = time.perf_counter() - start
        extra = [Sample("up", (), 1.0), Sample("scrape_duration_seconds", (), duration)]
        return self._snapshot(timestamp, [*samples, *extra], names)

    def _snapshot(
        self, timestamp: float, samples: list[Sample], names: set[str]
    ) -> Snapshot:
        return Snapshot(
            timestamp=timestamp,
            samples=tuple(with_target_labels(samples, self._labels)),
            metric_names=frozenset(names | {"up", "scrape_duration_seconds"}),
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
