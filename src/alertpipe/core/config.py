"""Router configuration (the Alertmanager-style routing file).

Example::

    resolve_timeout: 5m
    route:
      receiver: web.hook
      group_by: [alertname]
      group_wait: 30s
      group_interval: 5m
      repeat_interval: 4h
    receivers:
      - name: web.hook
        url: http://127.0.0.1:5001/
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from alertpipe.core.durations import parse_duration
from alertpipe.core.exceptions import ConfigError

GROUP_BY_ALL = "..."


@dataclass(frozen=True)
class RouteConfig:
    receiver: str
    group_by: tuple[str, ...] = ("alertname",)
    group_wait: float = 30.0
    group_interval: float = 300.0
    repeat_interval: float = 14400.0

    @property
    def group_by_all(self) -> bool:
        return GROUP_BY_ALL in self.group_by


@dataclass(frozen=True)
class ReceiverConfig:
    name: str
    url: str


@dataclass(frozen=True)
class RouterConfig:
    route: RouteConfig
    receivers: tuple[ReceiverConfig, ...] = field(default_factory=tuple)
    resolve_timeout: float = 300.0

    def receiver(self, name: str | None = None) -> ReceiverConfig:
        """Return the named receiver (default: the route's receiver)."""
        wanted = name or self.route.receiver
        for receiver in self.receivers:
            if receiver.name == wanted:
                return receiver
        raise ConfigError(f"unknown receiver {wanted!r}")


def _duration(raw: Mapping[str, Any], key: str, default: float, where: str) -> float:
    if raw.get(key) is None:
        return default
    try:
        return parse_duration(raw[key])
    except ValueError as exc:
        raise ConfigError(f"{where}: invalid {key!r}: {exc}") from exc


def _receiver(raw: Any, position: int) -> ReceiverConfig:
    if not isinstance(raw, Mapping) or not isinstance(raw.get("name"), str):
        raise ConfigError(f"receiver #{position + 1} needs a 'name'")
    name = raw["name"]
    url = raw.get("url")
    webhooks = raw.get("webhook_configs")
    if url is None and isinstance(webhooks, list) and webhooks:
        first = webhooks[0]
        url = first.get("url") if isinstance(first, Mapping) else None
    if not isinstance(url, str) or not url.startswith(("http://", "https://")):
        raise ConfigError(f"receiver {name!r} needs an http(s) webhook url")
    return ReceiverConfig(name=name, url=url)


def parse_router_config(document: str | Mapping[str, Any]) -> RouterConfig:
    """Parse a router configuration document (YAML text or mapping).

    Raises:
        ConfigError: The document is malformed or names an unknown receiver.
    """
    if isinstance(document, str):
        try:
            document = yaml.safe_load(document)
        except yaml.YAMLError as exc:
            raise ConfigError(f"router config is not valid YAML: {exc}") from exc
    if not isinstance(document, Mapping):
        raise ConfigError("router config must be a mapping")

    raw_route = document.get("route")
    if not isinstance(raw_route, Mapping):
        raise ConfigError("router config needs a 'route' section")
    receiver = raw_route.get("receiver")
    if not isinstance(receiver, str):
        raise ConfigError("route: 'receiver' is required")
    group_by = raw_route.get("group_by", ["alertname"])
    if not isinstance(group_by, list) or not all(isinstance(g, str) for g in group_by):
        raise ConfigError("route: 'group_by' must be a list of label names")
    route = RouteConfig(
        receiver=receiver,
        group_by=tuple(group_by) or ("alertname",),
        group_wait=_duration(raw_route, "group_wait", 30.0, "route"),
        group_interval=_duration(raw_route, "group_interval", 300.0, "route"),
        repeat_interval=_duration(raw_route, "repeat_interval", 14400.0, "route"),
    )
    if route.group_interval <= 0 or route.repeat_interval <= 0:
        raise ConfigError("route: group_interval and repeat_interval must be positive")

    raw_receivers = document.get("receivers") or []
    if not isinstance(raw_receivers, list):
        raise ConfigError("'receivers' must be a list")
    receivers = tuple(_receiver(raw, i) for i, raw in enumerate(raw_receivers))

    globals_ = document.get("global") or {}
    if not isinstance(globals_, Mapping):
        raise ConfigError("'global' must be a mapping")
    timeout_source = document if "resolve_timeout" in document else globals_
    config = RouterConfig(
        route=route,
        receivers=receivers,
        resolve_timeout=_duration(
            timeout_source, "resolve_timeout", 300.0, "router config"
        ),
    )
    config.receiver()
    return config


def load_router_config(path: str | Path) -> RouterConfig:
    """Load and validate a router configuration file."""
    try:
        text = Path(path).read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"cannot read router config {path}: {exc}") from exc
    return parse_router_config(text)
