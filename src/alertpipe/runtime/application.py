"""Assembles a runnable alerting process from Settings."""

import logging
from dataclasses import dataclass, field

import httpx

from alertpipe.adapters.frameworks.asgi import (
    ASGIApp,
    InstrumentationMiddleware,
    create_asgi_app,
)
from alertpipe.adapters.notifiers.webhook import WebhookNotifier
from alertpipe.adapters.targets import HttpTargetSource
from alertpipe.core.config import RouterConfig, load_router_config
from alertpipe.core.engine import RuleEngine
from alertpipe.core.ports import LogStoragePort, SnapshotSource
from alertpipe.core.registry import MetricRegistry
from alertpipe.core.router import AlertRouter, RetryPolicy
from alertpipe.core.rules import RuleGroup, load_rules
from alertpipe.runtime.sampler import RegistrySource, Sampler
from alertpipe.runtime.tasks import AlertingRuntime
from alertpipe.settings import Settings

logger = logging.getLogger(__name__)


@dataclass
class Application:
    """Everything a running process owns."""

    settings: Settings
    registry: MetricRegistry
    rule_groups: list[RuleGroup]
    router_config: RouterConfig
    runtime: AlertingRuntime
    asgi_app: ASGIApp
    client: httpx.AsyncClient
    targets: list[HttpTargetSource] = field(default_factory=list)

    async def aclose(self) -> None:
        await self.client.aclose()


def build_application(
    settings: Settings,
    log_storage: LogStoragePort | None = None,
    registry: MetricRegistry | None = None,
    client: httpx.AsyncClient | None = None,
) -> Application:
    """Load rule and router files and wire every component.

    Raises:
        ConfigError: A rule or router file is missing or malformed.
        RegistrationError: A metric definition conflicts with another.
    """
    rule_groups = load_rules(settings.rules_file)
    router_config = load_router_config(settings.router_config_file)
    receiver = router_config.receiver()

    registry = registry or MetricRegistry()
    client = client or httpx.AsyncClient(timeout=settings.delivery_timeout)

    sources: list[SnapshotSource] = [
        RegistrySource(registry, job=settings.job, instance=settings.instance_label)
    ]
    targets = [
        HttpTargetSource(
            url, job=settings.job, client=client, timeout=settings.delivery_timeout
        )
        for url in settings.scrape_targets
    ]
    sources.extend(targets)

    engine = RuleEngine(rule_groups, registry=registry)
    notifier = WebhookNotifier(
        receiver.name, receiver.url, client=client, timeout=settings.delivery_timeout
    )
    retry = RetryPolicy(
        max_attempts=settings.delivery_max_attempts,
        initial_backoff=settings.delivery_initial_backoff,
        max_backoff=settings.delivery_max_backoff,
    )
    router = AlertRouter(router_config, notifier, retry=retry, registry=registry)
    sampler = Sampler(sources, lookback=settings.lookback)
    runtime = AlertingRuntime(
        sampler,
        engine,
        router,
        scrape_interval=settings.scrape_interval,
        evaluation_interval=settings.evaluation_interval,
        router_interval=settings.router_interval,
    )
    asgi_app = InstrumentationMiddleware(
        create_asgi_app(registry, log_storage=log_storage, engine=engine), registry
    )
    logger.info(
        "Application configured",
        extra={
            "rules": len(engine.rules),
            "receiver": receiver.name,
            "targets": len(targets),
        },
    )
    return Application(
        settings=settings,
        registry=registry,
        rule_groups=rule_groups,
        router_config=router_config,
        runtime=runtime,
        asgi_app=asgi_app,
        client=client,
        targets=targets,
    )
