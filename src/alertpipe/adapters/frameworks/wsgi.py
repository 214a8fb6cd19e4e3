"""WSGI adapter: request instrumentation and the scrape endpoint.

The synchronous counterpart of the ASGI adapter, for Flask, Django (WSGI
mode) and any other WSGI server. Event storage reads are async, so the
/logs endpoint drives them with ``asyncio.run``.
"""

import asyncio
import fnmatch
import json
import logging
import time
from collections.abc import Callable, Iterable, Iterator, Sequence
from typing import Any
from urllib.parse import parse_qs

from alertpipe.adapters.frameworks.asgi import (
    JSON_CONTENT_TYPE,
    NDJSON_CONTENT_TYPE,
    REQUEST_COUNTER,
    REQUEST_HISTOGRAM,
    SCRAPE_ROUTES,
    _current_alerts,
    handler_label,
    register_http_metrics,
)
from alertpipe.adapters.frameworks.query_params import (
    _parse_level_param,
    _parse_since_param,
    _parse_state_param,
)
from alertpipe.core.encoding.ndjson import encode_alerts, encode_logs
from alertpipe.core.encoding.prometheus import CONTENT_TYPE
from alertpipe.core.engine import RuleEngine
from alertpipe.core.ports import LogStoragePort
from alertpipe.core.registry import MetricRegistry

logger = logging.getLogger(__name__)

Environ = dict[str, Any]
StartResponse = Callable[..., Any]
WSGIApp = Callable[[Environ, StartResponse], Iterable[bytes]]

_STATUS_TEXT = {
    200: "200 OK",
    404: "404 Not Found",
    405: "405 Method Not Allowed",
    500: "500 Internal Server Error",
}


class WSGIInstrumentationMiddleware:
    """WSGI middleware that records request counts and durations.

    The request is timed until the response body has been fully iterated
    (or closed), so streamed responses are measured end to end.

    WSGI has no route templates, so the ``handler`` label is the first of
    ``routes`` matching the path, or ``other``.
    """

    def __init__(
        self,
        app: WSGIApp,
        registry: MetricRegistry,
        exclude_paths: list[str] | None = None,
        request_counter_name: str = REQUEST_COUNTER,
        request_histogram_name: str = REQUEST_HISTOGRAM,
        routes: Sequence[str] = SCRAPE_ROUTES,
    ) -> None:
        self.app = app
        self.registry = registry
        self.exclude_paths = exclude_paths or []
        self.routes = routes
        self.request_counter_name = request_counter_name
        self.request_histogram_name = request_histogram_name
        register_http_metrics(registry, request_counter_name, request_histogram_name)

    def _path_excluded(self, path: str) -> bool:
        return any(fnmatch.fnmatch(path, pattern) for pattern in self.exclude_paths)

    def _record(self, environ: Environ, status: str | None, duration: float) -> None:
        method = environ.get("REQUEST_METHOD", "GET")
        handler = handler_label(environ.get("PATH_INFO", ""), self.routes)
        code = status.split(" ", 1)[0] if status else "500"
        self.registry.observe_histogram(
            self.request_histogram_name, [handler, method], duration
        )
        self.registry.increment_counter(self.request_counter_name, [code, method])

    def __call__(
        self, environ: Environ, start_response: StartResponse
    ) -> Iterator[bytes]:
        if self._path_excluded(environ.get("PATH_INFO", "")):
            yield from self.app(environ, start_response)
            return

        start_time = time.perf_counter()
        captured: dict[str, str | None] = {"status": None}

        def wrapped_start_response(
            status: str, headers: Any, exc_info: Any = None
        ) -> Any:
            captured["status"] = status
            return start_response(status, headers, exc_info)

        result: Iterable[bytes] | None = None
        try:
            result = self.app(environ, wrapped_start_response)
            yield from result
        finally:
            if result is not None and hasattr(result, "close"):
                result.close()
            self._record(environ, captured["status"], time.perf_counter() - start_time)


def _response(
    start_response: StartResponse,
    status: int,
    content_type: str,
    body: str,
    extra_headers: list[tuple[str, str]] | None = None,
) -> list[bytes]:
    payload = body.encode()
    headers = [
        ("Content-Type", content_type),
        ("Content-Length", str(len(payload))),
        *(extra_headers or []),
    ]
    start_response(_STATUS_TEXT[status], headers)
    return [payload]


def _handle_endpoint(
    start_response: StartResponse,
    endpoint_func: Callable[[], str],
    content_type: str,
    log_message: str,
) -> list[bytes]:
    try:
        body = endpoint_func()
    except Exception:
        logger.exception(log_message)
        error_body = json.dumps({"error": "Internal Server Error"})
        return _response(start_response, 500, JSON_CONTENT_TYPE, error_body)
    return _response(start_response, 200, content_type, body)


def create_wsgi_app(
    registry: MetricRegistry,
    log_storage: LogStoragePort | None = None,
    engine: RuleEngine | None = None,
) -> WSGIApp:
    """Create a WSGI app with /metrics, /logs and /alerts endpoints.

    Args:
        registry: Registry rendered at /metrics.
        log_storage: Event storage served at /logs as NDJSON.
        engine: Rule engine whose pending and firing alerts /alerts lists.

    Returns:
        WSGI application callable.
    """

    async def read_logs(since: float, level: str | None) -> str:
        assert log_storage is not None
        entries = [e async for e in log_storage.read(since=since, level=level)]
        return encode_logs(entries)

    def render_logs(since: float, level: str | None) -> str:
        if log_storage is None:
            return ""
        return asyncio.run(read_logs(since, level))

    def render_alerts(state: str | None) -> str:
        if engine is None:
            return "[]"
        return encode_alerts(_current_alerts(engine, state))

    def app(environ: Environ, start_response: StartResponse) -> list[bytes]:
        path = environ.get("PATH_INFO", "")
        if path not in SCRAPE_ROUTES:
            return _response(start_response, 404, "text/plain", "Not Found")
        if environ.get("REQUEST_METHOD", "GET") not in ("GET", "HEAD"):
            return _response(
                start_response,
                405,
                "text/plain",
                "Method Not Allowed",
                [("Allow", "GET")],
            )

        params = parse_qs(environ.get("QUERY_STRING", ""))
        if path == "/metrics":
            return _handle_endpoint(
                start_response,
                registry.render,
                CONTENT_TYPE,
                "Error rendering metrics endpoint",
            )
        if path == "/logs":
            since = _parse_since_param(params)
            level = _parse_level_param(params)
            return _handle_endpoint(
                start_response,
                lambda: render_logs(since, level),
                NDJSON_CONTENT_TYPE,
                "Error encoding logs endpoint",
            )
        state = _parse_state_param(params)
        return _handle_endpoint(
            start_response,
            lambda: render_alerts(state),
            JSON_CONTENT_TYPE,
            "Error encoding alerts endpoint",
        )

    return app
