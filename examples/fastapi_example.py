"""Example FastAPI application with request metrics and in-process alerting.

Run with:
    uvicorn examples.fastapi_example:app --reload

Endpoints:
    /metrics              - Prometheus text format
    /logs                 - NDJSON event log
    /logs?level=<level>   - NDJSON event log filtered by level
    /users/{user_id}      - Instrumented example route

The alerting loops evaluate examples/alert_rules.yml against the app's own
metrics and post notifications to the webhook in examples/alertmanager.yml.
"""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, HTTPException

from alertpipe import (
    AlertingRuntime,
    AlertRouter,
    InstrumentationMiddleware,
    MetricRegistry,
    RegistrySource,
    RingBufferLogStorage,
    RuleEngine,
    Sampler,
    WebhookNotifier,
    configure_logging,
    load_router_config,
    load_rules,
)
from alertpipe.adapters.frameworks.fastapi import create_observability_router

HERE = Path(__file__).parent

registry = MetricRegistry()
log_storage = RingBufferLogStorage(max_size=1000)
configure_logging("INFO", log_storage)

router_config = load_router_config(HERE / "alertmanager.yml")
receiver = router_config.receiver()
engine = RuleEngine(load_rules(HERE / "alert_rules.yml"), registry=registry)
runtime = AlertingRuntime(
    Sampler([RegistrySource(registry, job="example", instance="localhost:8000")]),
    engine,
    AlertRouter(
        router_config,
        WebhookNotifier(receiver.name, receiver.url),
        registry=registry,
    ),
)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    runtime.start()
    yield
    await runtime.stop()


app = FastAPI(title="alertpipe example", lifespan=lifespan)
app.include_router(create_observability_router(registry, log_storage))
app.add_middleware(
    InstrumentationMiddleware, registry=registry, exclude_paths=["/metrics"]
)


@app.get("/")
async def root() -> dict[str, str]:
    return {"message": "Hello! Check /metrics and /logs endpoints."}


@app.get("/users/{user_id}")
async def get_user(user_id: str) -> dict[str, str]:
    """Recorded under handler="/users/{user_id}" whatever the id."""
    await asyncio.sleep(0.05)
    if user_id == "0":
        raise HTTPException(status_code=500, detail="simulated failure")
    return {"id": user_id, "name": "Alice"}
