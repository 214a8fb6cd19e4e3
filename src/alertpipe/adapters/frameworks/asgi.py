"""ASGI adapter: request instrumentation and the scrape endpoint.

Works with any ASGI server (uvicorn, hypercorn, daphne) and any ASGI
framework, without requiring FastAPI or Starlette as dependencies.
"""

import fnmatch
import json
import logging
import time
from collections.abc import Callable, Coroutine, Sequence
from typing import Any
from urllib.parse import parse_qs

from alertpipe.adapters.frameworks.query_params import (
    _parse_level_param,
    _parse_since_param,
    _parse_state_param,
)
from alertpipe.core.encoding.ndjson import encode_alerts, encode_logs
from alertpipe.core.encoding.prometheus import CONTENT_TYPE
from alertpipe.core.engine import RuleEngine
from alertpipe.core.models import Alert, AlertState, MetricKind
from alertpipe.core.ports import LogStoragePort
from alertpipe.core.registry import MetricRegistry

logger = logging.getLogger(__name__)

Scope = dict[str, Any]
Receive = Callable[[], Coroutine[Any, Any, dict[str, Any]]]
Send = Callable[[dict[str, Any]], Coroutine[Any, Any, None]]
ASGIApp = Callable[[Scope, Receive, Send], Coroutine[Any, Any, None]]

NDJSON_CONTENT_TYPE = "application/x-ndjson"
JSON_CONTENT_TYPE = "application/json"

REQUEST_COUNTER = "http_requests_total"
REQUEST_HISTOGRAM = "http_request_duration_seconds"
UNMATCHED_HANDLER = "other"
SCRAPE_ROUTES = ("/metrics", "/logs", "/alerts")


def _parse_query_params(scope: Scope) -> dict[str, list[str]]:
    """Parse query string from ASGI scope into parameter dictionary.

    Returns:
        Dictionary mapping parameter names to lists of values.
        Returns empty dict if query_string is missing or empty.
    """
    query_string = scope.get("query_string", b"").decode(errors="replace")
    return parse_qs(query_string)


def handler_label(path: str, routes: Sequence[str], template: Any = None) -> str:
    """Bounded ``handler`` label for a request.

    The framework's matched route template wins, then the first of
    ``routes`` that matches the path (exactly or as a wildcard pattern).
    Anything else is labelled ``other``.
    """
    if isinstance(template, str) and template:
        return template
    for route in routes:
        if fnmatch.fnmatch(path, route):
            return route
    return UNMATCHED_HANDLER


def register_http_metrics(
    registry: MetricRegistry,
    counter_name: str = REQUEST_COUNTER,
    histogram_name: str = REQUEST_HISTOGRAM,
) -> None:
    """Register the request counter and duration histogram."""
    registry.register(
        counter_name,
        MetricKind.COUNTER,
        ["code", "method"],
        help="Total number of HTTP requests",
    )
    registry.register(
        histogram_name,
        MetricKind.HISTOGRAM,
        ["handler", "method"],
        help="HTTP request duration in seconds",
    )


async def _send_response(
    send: Send,
    status: int,
    content_type: str,
    body: str,
    extra_headers: Sequence[tuple[bytes, bytes]] = (),
) -> None:
    """Send an HTTP response with headers and body.

    Args:
        send: ASGI send callable for writing response.
        status: HTTP status code.
        content_type: Content-Type header value.
        body: Response body as string (will be encoded to bytes).
        extra_headers: Additional raw header pairs.
    """
    headers = [(b"content-type", content_type.encode()), *extra_headers]
    await send({"type": "http.response.start", "status": status, "headers": headers})
    await send({"type": "http.response.body", "body": body.encode()})


async def _handle_endpoint(
    send: Send,
    endpoint_func: Callable[[], Coroutine[Any, Any, str]],
    content_type: str,
    log_message: str,
) -> None:
    """Execute an endpoint function with error handling and send response.

    Args:
        send: ASGI send callable for writing response.
        endpoint_func: Async function that returns response body.
        content_type: Content-Type header for success response.
        log_message: Message to log on error.
    """
    try:
        body = await endpoint_func()
    except Exception:
        logger.exception(log_message)
        error_body = json.dumps({"error": "Internal Server Error"})
        await _send_response(send, 500, JSON_CONTENT_TYPE, error_body)
        return
    await _send_response(send, 200, content_type, body)


class InstrumentationMiddleware:
    """ASGI middleware that records request counts and durations.

    For every HTTP request the duration histogram is observed under
    ``{handler, method}`` and the request counter is incremented under
    ``{code, method}``. Both happen on every exit path; a handler that
    raises before sending a status is counted as ``500`` and the exception
    is re-raised.
    """

    def __init__(
        self,
        app: ASGIApp,
        registry: MetricRegistry,
        exclude_paths: list[str] | None = None,
        request_counter_name: str = REQUEST_COUNTER,
        request_histogram_name: str = REQUEST_HISTOGRAM,
        routes: Sequence[str] = SCRAPE_ROUTES,
    ) -> None:
        """Wrap an app and register the request metrics.

        Args:
            app: The ASGI application to wrap.
            registry: Registry the request metrics are recorded in.
            exclude_paths: Paths not to record. Supports exact matches and
                wildcard patterns (e.g., "/internal/*").
            request_counter_name: Name of the request counter.
            request_histogram_name: Name of the duration histogram.
            routes: Path patterns used as the handler label for requests the
                framework recorded no route template for. Other paths are
                labelled "other".
        """
        self.app = app
        self.registry = registry
        self.exclude_paths = exclude_paths or []
        self.routes = routes
        self.request_counter_name = request_counter_name
        self.request_histogram_name = request_histogram_name
        register_http_metrics(registry, request_counter_name, request_histogram_name)

    def _path_excluded(self, path: str) -> bool:
        return any(fnmatch.fnmatch(path, pattern) for pattern in self.exclude_paths)

    def _handler(self, scope: Scope) -> str:
        template = getattr(scope.get("route"), "path", None)
        return handler_label(scope.get("path", ""), self.routes, template)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http" or self._path_excluded(scope["path"]):
            await self.app(scope, receive, send)
            return

        start_time = time.perf_counter()
        status: int | None = None

        async def wrapped_send(message: dict[str, Any]) -> None:
            nonlocal status
            if message["type"] == "http.response.start":
                status = message["status"]
            await send(message)

        try:
            await self.app(scope, receive, wrapped_send)
        except Exception:
            if status is None:
                status = 500
            raise
        finally:
            duration = time.perf_counter() - start_time
            method = scope.get("method", "GET")
            self.registry.observe_histogram(
                self.request_histogram_name, [self._handler(scope), method], duration
            )
            self.registry.increment_counter(
                self.request_counter_name, [str(status or 500), method]
            )


def _current_alerts(engine: RuleEngine, state: str | None) -> list[Alert]:
    alerts = [
        alert
        for alert in engine.alerts()
        if alert.state in (AlertState.PENDING, AlertState.FIRING)
    ]
    if state is not None:
        alerts = [alert for alert in alerts if alert.state == state]
    return alerts


def create_asgi_app(
    registry: MetricRegistry,
    log_storage: LogStoragePort | None = None,
    engine: RuleEngine | None = None,
) -> ASGIApp:
    """Create an ASGI app with /metrics, /logs and /alerts endpoints.

    Args:
        registry: Registry rendered at /metrics.
        log_storage: Event storage served at /logs as NDJSON.
        engine: Rule engine whose pending and firing alerts /alerts lists.

    Returns:
        ASGI application callable.
    """

    async def render_metrics() -> str:
        return registry.render()

    async def render_logs(since: float, level: str | None) -> str:
        if log_storage is None:
            return ""
        entries = [e async for e in log_storage.read(since=since, level=level)]
        return encode_logs(entries)

    async def render_alerts(state: str | None) -> str:
        if engine is None:
            return "[]"
        return encode_alerts(_current_alerts(engine, state))

    async def app(scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            return

        path = scope["path"]
        if path not in SCRAPE_ROUTES:
            await _send_response(send, 404, "text/plain", "Not Found")
            return
        if scope.get("method", "GET") not in ("GET", "HEAD"):
            await _send_response(
                send, 405, "text/plain", "Method Not Allowed", [(b"allow", b"GET")]
            )
            return

        params = _parse_query_params(scope)
        if path == "/metrics":
            await _handle_endpoint(
                send, render_metrics, CONTENT_TYPE, "Error rendering metrics endpoint"
            )
        elif path == "/logs":
            since = _parse_since_param(params)
            level = _parse_level_param(params)
            await _handle_endpoint(
                send,
                lambda: render_logs(since, level),
                NDJSON_CONTENT_TYPE,
                "Error encoding logs endpoint",
            )
        else:
            state = _parse_state_param(params)
            await _handle_endpoint(
                send,
                lambda: render_alerts(state),
                JSON_CONTENT_TYPE,
                "Error encoding alerts endpoint",
            )

    return app
