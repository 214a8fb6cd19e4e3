"""alertpipe: request metrics, a scrape endpoint, and an alerting pipeline.

Example:
    ```python
    from alertpipe import InstrumentationMiddleware, MetricRegistry, create_asgi_app

    registry = MetricRegistry()
    app = InstrumentationMiddleware(create_asgi_app(registry), registry)
    ```
"""

from alertpipe.adapters.frameworks.asgi import (
    InstrumentationMiddleware,
    create_asgi_app,
)
from alertpipe.adapters.frameworks.wsgi import (
    WSGIInstrumentationMiddleware,
    create_wsgi_app,
)
from alertpipe.adapters.logging import EventLogHandler, configure_logging
from alertpipe.adapters.notifiers.webhook import WebhookNotifier
from alertpipe.adapters.storage import (
    InMemoryLogStorage,
    RingBufferLogStorage,
    SnapshotRingBuffer,
)
from alertpipe.adapters.targets import HttpTargetSource
from alertpipe.core.config import (
    RouterConfig,
    load_router_config,
    parse_router_config,
)
from alertpipe.core.encoding.prometheus import parse_text
from alertpipe.core.engine import RuleEngine, RuleState
from alertpipe.core.exceptions import (
    AlertpipeError,
    ConfigError,
    DeliveryError,
    DuplicateMetric,
    EvaluationError,
    ExpressionSyntaxError,
    LabelMismatch,
    RegistrationError,
    UnknownSeries,
)
from alertpipe.core.models import (
    Alert,
    AlertBatch,
    AlertState,
    GroupKey,
    LogEntry,
    MetricKind,
    Snapshot,
)
from alertpipe.core.registry import MetricRegistry
from alertpipe.core.router import AlertRouter, Notification, RetryPolicy
from alertpipe.core.rules import Rule, RuleGroup, load_rules, parse_rules
from alertpipe.runtime import (
    AlertingRuntime,
    Handoff,
    PeriodicTask,
    RegistrySource,
    Sampler,
    SnapshotWindow,
)

__version__ = "0.1.0"

__all__ = [
    "Alert",
    "AlertBatch",
    "AlertRouter",
    "AlertState",
    "AlertingRuntime",
    "AlertpipeError",
    "ConfigError",
    "DeliveryError",
    "DuplicateMetric",
    "EvaluationError",
    "EventLogHandler",
    "ExpressionSyntaxError",
    "GroupKey",
    "Handoff",
    "HttpTargetSource",
    "InMemoryLogStorage",
    "InstrumentationMiddleware",
    "LabelMismatch",
    "LogEntry",
    "MetricKind",
    "MetricRegistry",
    "Notification",
    "PeriodicTask",
    "RegistrationError",
    "RegistrySource",
    "RetryPolicy",
    "RingBufferLogStorage",
    "RouterConfig",
    "Rule",
    "RuleEngine",
    "RuleGroup",
    "RuleState",
    "Sampler",
    "Snapshot",
    "SnapshotRingBuffer",
    "SnapshotWindow",
    "UnknownSeries",
    "WSGIInstrumentationMiddleware",
    "WebhookNotifier",
    "configure_logging",
    "create_asgi_app",
    "create_wsgi_app",
    "load_router_config",
    "load_rules",
    "parse_router_config",
    "parse_rules",
    "parse_text",
]
