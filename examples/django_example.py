"""Example Django application served over WSGI with request metrics.

Run with:
    gunicorn examples.django_example:application

Then visit:
    http://localhost:8000/           - Root view (instrumented)
    http://localhost:8000/users      - Users view (instrumented)
    http://localhost:8000/metrics    - Prometheus text format
    http://localhost:8000/logs       - NDJSON event log

Alerting loops are asyncio tasks; run `alertpipe --target
http://localhost:8000/metrics` alongside to evaluate rules against this app.
"""

import django
from django.conf import settings
from django.http import HttpRequest, JsonResponse

if not settings.configured:
    settings.configure(
        DEBUG=True,
        ROOT_URLCONF=__name__,
        ALLOWED_HOSTS=["*"],
        SECRET_KEY="example-secret-key-not-for-production",
    )
    django.setup()

from django.core.wsgi import get_wsgi_application
from django.urls import path

from alertpipe import (
    MetricRegistry,
    RingBufferLogStorage,
    WSGIInstrumentationMiddleware,
    configure_logging,
    create_wsgi_app,
)

registry = MetricRegistry()
log_storage = RingBufferLogStorage(max_size=1000)
configure_logging("INFO", log_storage)

SCRAPE_PATHS = ("/metrics", "/logs")


def root(request: HttpRequest) -> JsonResponse:
    return JsonResponse({"message": "Hello! Check /metrics and /logs endpoints."})


def users(request: HttpRequest) -> JsonResponse:
    return JsonResponse({"users": [{"id": "1", "name": "Alice"}]})


urlpatterns = [
    path("", root),
    path("users", users),
]

django_app = get_wsgi_application()
scrape_app = create_wsgi_app(registry, log_storage=log_storage)


def dispatch(environ, start_response):
    if environ.get("PATH_INFO", "/") in SCRAPE_PATHS:
        return scrape_app(environ, start_response)
    return django_app(environ, start_response)


application = WSGIInstrumentationMiddleware(
    dispatch, registry, exclude_paths=list(SCRAPE_PATHS)
)
