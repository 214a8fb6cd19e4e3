"""FastAPI adapter for the scrape and event endpoints."""

from fastapi import APIRouter, Query, Response

from alertpipe.core.encoding.ndjson import encode_logs
from alertpipe.core.encoding.prometheus import CONTENT_TYPE
from alertpipe.core.ports import LogStoragePort
from alertpipe.core.registry import MetricRegistry


def create_observability_router(
    registry: MetricRegistry,
    log_storage: LogStoragePort | None = None,
) -> APIRouter:
    """Create a FastAPI router with /metrics and /logs endpoints.

    Args:
        registry: Registry rendered at /metrics.
        log_storage: Storage adapter implementing LogStoragePort.

    Returns:
        APIRouter with /metrics and /logs endpoints configured.
    """
    router = APIRouter()

    @router.get("/metrics")
    async def get_metrics() -> Response:
        """Return metrics in Prometheus text format."""
        return Response(content=registry.render(), media_type=CONTENT_TYPE)

    @router.get("/logs")
    async def get_logs(
        since: float = Query(default=0, ge=0),
        level: str | None = Query(default=None),
    ) -> Response:
        """Return observability events in NDJSON format.

        Args:
            since: Unix timestamp. Returns entries with timestamp > since.
            level: Only return entries with this level.
        """
        entries = []
        if log_storage is not None:
            level = level.upper() if level else None
            entries = [e async for e in log_storage.read(since=since, level=level)]
        return Response(content=encode_logs(entries), media_type="application/x-ndjson")

    return router
