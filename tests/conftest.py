"""Shared test fixtures for all test modules."""

import logging
from collections.abc import AsyncGenerator, Generator

import httpx
import pytest

from alertpipe.adapters.storage.in_memory import InMemoryLogStorage
from alertpipe.core.config import RouteConfig, RouterConfig
from alertpipe.core.registry import MetricRegistry
from tests.helpers import RecordingNotifier, RecordingSleep

# === Core Fixtures ===


@pytest.fixture
def registry() -> Generator[MetricRegistry]:
    """A fresh registry, cleared on teardown."""
    registry = MetricRegistry(clock=lambda: 1000.0)
    yield registry
    registry.clear()


@pytest.fixture
def log_storage() -> InMemoryLogStorage:
    """An empty event storage."""
    return InMemoryLogStorage()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def fake_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def router_config() -> RouterConfig:
    """Route grouping by alertname with short, round timers."""
    return RouterConfig(
        route=RouteConfig(
            receiver="web.hook",
            group_by=("alertname",),
            group_wait=30.0,
            group_interval=300.0,
            repeat_interval=3600.0,
        ),
        resolve_timeout=300.0,
    )


@pytest.fixture
def captured_logs(caplog: pytest.LogCaptureFixture) -> pytest.LogCaptureFixture:
    """caplog capturing everything alertpipe logs."""
    caplog.set_level(logging.DEBUG, logger="alertpipe")
    logging.getLogger("alertpipe").propagate = True
    return caplog


# === ASGI Test Fixtures ===


@pytest.fixture
def basic_asgi_app():
    """Basic ASGI app fixture that returns 200 OK."""
    from alertpipe.adapters.frameworks.asgi import Receive, Scope, Send

    async def app(scope: Scope, receive: Receive, send: Send) -> None:
        await send({"type": "http.response.start", "status": 200, "headers": []})
        await send({"type": "http.response.body", "body": b"OK"})

    return app


@pytest.fixture
def asgi_scope():
    """Factory fixture for creating ASGI scope dicts."""
    from alertpipe.adapters.frameworks.asgi import Scope

    def _scope(method: str = "GET", path: str = "/test") -> Scope:
        return {
            "type": "http",
            "method": method,
            "path": path,
            "query_string": b"",
            "headers": [],
        }

    return _scope


@pytest.fixture
def asgi_send_capture():
    """Fixture that returns a send callable and a responses list for capture."""
    responses: list[dict[str, object]] = []

    async def send(message: dict[str, object]) -> None:
        responses.append(message)

    return send, responses


@pytest.fixture
def asgi_test_client():
    """Factory fixture that creates an httpx.AsyncClient for ASGI testing.

    Usage:
        async def test_something(asgi_test_client):
            app = create_asgi_app(registry)
            async with asgi_test_client(app) as client:
                response = await client.get("/metrics")
    """

    def _get_client(app):
        return httpx.AsyncClient(
            transport=httpx.ASGITransport(app=app), base_url="http://test"
        )

    return _get_client


@pytest.fixture
async def asgi_client_with_storage(
    registry: MetricRegistry,
    log_storage: InMemoryLogStorage,
    asgi_test_client,
) -> AsyncGenerator:
    """Tuple of (client, registry, log_storage) for the scrape app."""
    from alertpipe.adapters.frameworks.asgi import create_asgi_app

    app = create_asgi_app(registry, log_storage=log_storage)
    async with asgi_test_client(app) as client:
        yield client, registry, log_storage


# === WSGI Test Fixtures ===


@pytest.fixture
def wsgi_test_client():
    """Factory fixture that creates an httpx.Client for WSGI testing."""

    def _get_client(app):
        return httpx.Client(
            transport=httpx.WSGITransport(app=app), base_url="http://test"
        )

    return _get_client


@pytest.fixture
def wsgi_client_with_storage(
    registry: MetricRegistry,
    log_storage: InMemoryLogStorage,
    wsgi_test_client,
) -> Generator:
    """Tuple of (client, registry, log_storage) for the WSGI scrape app."""
    from alertpipe.adapters.frameworks.wsgi import create_wsgi_app

    app = create_wsgi_app(registry, log_storage=log_storage)
    with wsgi_test_client(app) as client:
        yield client, registry, log_storage
