"""Alerting rules and the rule file loader.

Rule files use the Prometheus layout::

    groups:
      - name: example
        rules:
          - alert: InstanceDown
            expr: up == 0
            for: 5m
            labels:
              severity: critical
            annotations:
              summary: "Instance {{ $labels.instance }} down"
"""

import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from alertpipe.core.durations import parse_duration
from alertpipe.core.encoding.prometheus import format_value
from alertpipe.core.exceptions import ConfigError, ExpressionSyntaxError
from alertpipe.core.expression import Expr, ValueType, max_range, parse

_TEMPLATE_RE = re.compile(
    r"\{\{\s*(?:\$labels\.|\.Labels\.)([a-zA-Z_][a-zA-Z0-9_]*)\s*\}\}"
    r"|\{\{\s*(?:\$value|\.Value)\s*\}\}"
)
_ALERT_NAME_RE = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")
_RULE_KEYS = frozenset({"alert", "expr", "for", "labels", "annotations"})
NO_VALUE = "<no value>"


def render_template(template: str, labels: Mapping[str, str], value: float) -> str:
    """Substitute ``{{ $labels.<name> }}`` and ``{{ $value }}`` placeholders.

    Unknown labels render as ``<no value>``.
    """

    def substitute(match: re.Match[str]) -> str:
        label = match.group(1)
        if label is None:
            return format_value(value)
        return labels.get(label, NO_VALUE)

    return _TEMPLATE_RE.sub(substitute, template)


@dataclass(frozen=True)
class Rule:
    """An alerting rule; immutable after load.

    Attributes:
        name: Alert name, also the ``alertname`` label of its alerts.
        expr: Expression source text.
        expression: Parsed expression (always an instant vector).
        for_: Seconds the expression must hold before the alert fires.
        labels: Labels added to every alert of this rule.
        annotations: Annotation templates.
        group: Name of the rule group the rule was loaded from.
    """

    name: str
    expr: str
    expression: Expr = field(compare=False, repr=False)
    for_: float = 0.0
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)
    group: str = ""

    @classmethod
    def create(
        cls,
        name: str,
        expr: str,
        for_: float | str = 0.0,
        labels: Mapping[str, str] | None = None,
        annotations: Mapping[str, str] | None = None,
        group: str = "",
    ) -> "Rule":
        """Build a rule from source text, parsing and type-checking expr."""
        expression = parse(expr)
        if expression.type is not ValueType.VECTOR:
            raise ExpressionSyntaxError(
                f"alert expressions must return an instant vector, {expr!r} "
                f"returns a {expression.type}"
            )
        return cls(
            name=name,
            expr=expr,
            expression=expression,
            for_=parse_duration(for_),
            labels=dict(labels or {}),
            annotations=dict(annotations or {}),
            group=group,
        )

    @property
    def severity(self) -> str | None:
        return self.labels.get("severity")

    @property
    def lookback(self) -> float:
        """History needed to evaluate this rule and honour its ``for``."""
        return self.for_ + max_range(self.expression)

    def render_annotations(
        self, labels: Mapping[str, str], value: float
    ) -> dict[str, str]:
        return {
            key: render_template(template, labels, value)
            for key, template in self.annotations.items()
        }


@dataclass(frozen=True)
class RuleGroup:
    name: str
    rules: tuple[Rule, ...]
    interval: float | None = None


def _string_map(value: Any, what: str, where: str) -> dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"{where}: {what} must be a mapping")
    result = {}
    for key, item in value.items():
        if not isinstance(key, str) or isinstance(item, (Mapping, list)):
            raise ConfigError(f"{where}: {what} must map names to scalar values")
        result[key] = "" if item is None else str(item)
    return result


def _parse_rule(entry: Any, group: str, index: int) -> Rule:
    where = f"group {group!r} rule #{index + 1}"
    if not isinstance(entry, Mapping):
        raise ConfigError(f"{where}: expected a mapping")
    if "record" in entry:
        raise ConfigError(
            f"{where} ({entry['record']!r}): recording rules are not supported"
        )
    name = entry.get("alert")
    if not isinstance(name, str) or not _ALERT_NAME_RE.match(name):
        raise ConfigError(f"{where}: 'alert' must be a valid alert name, got {name!r}")
    where = f"group {group!r} rule {name!r}"
    unknown = set(entry) - _RULE_KEYS
    if unknown:
        raise ConfigError(f"{where}: unknown field(s) {sorted(unknown)}")
    expr = entry.get("expr")
    if isinstance(expr, (int, float)) and not isinstance(expr, bool):
        expr = str(expr)
    if not isinstance(expr, str) or not expr.strip():
        raise ConfigError(f"{where}: 'expr' is required")
    try:
        for_ = parse_duration(entry.get("for", 0))
    except ValueError as exc:
        raise ConfigError(f"{where}: invalid 'for': {exc}") from exc
    try:
        return Rule.create(
            name=name,
            expr=expr,
            for_=for_,
            labels=_string_map(entry.get("labels"), "labels", where),
            annotations=_string_map(entry.get("annotations"), "annotations", where),
            group=group,
        )
    except ExpressionSyntaxError as exc:
        raise ConfigError(f"{where}: {exc}") from exc


def parse_rules(document: str | Mapping[str, Any]) -> list[RuleGroup]:
    """Parse a rule file document (YAML text or an already-loaded mapping).

    Raises:
        ConfigError: The document or one of its rules is malformed; the
            message names the offending group and rule.
    """
    if isinstance(document, str):
        try:
            document = yaml.safe_load(document)
        except yaml.YAMLError as exc:
            raise ConfigError(f"rule file is not valid YAML: {exc}") from exc
    raw_groups = document.get("groups") if isinstance(document, Mapping) else None
    if not isinstance(raw_groups, list):
        raise ConfigError("rule file must contain a 'groups' list")
    groups = []
    seen: set[str] = set()
    for position, raw_group in enumerate(raw_groups):
        if not isinstance(raw_group, Mapping) or not isinstance(
            raw_group.get("name"), str
        ):
            raise ConfigError(f"rule group #{position + 1} needs a 'name'")
        name = raw_group["name"]
        if name in seen:
            raise ConfigError(f"rule group {name!r} is defined more than once")
        seen.add(name)
        raw_rules = raw_group.get("rules") or []
        if not isinstance(raw_rules, list):
            raise ConfigError(f"group {name!r}: 'rules' must be a list")
        interval = None
        if raw_group.get("interval") is not None:
            try:
                interval = parse_duration(raw_group["interval"])
            except ValueError as exc:
                raise ConfigError(f"group {name!r}: invalid 'interval': {exc}") from exc
        rules = tuple(_parse_rule(entry, name, i) for i, entry in enumerate(raw_rules))
        groups.append(RuleGroup(name=name, rules=rules, interval=interval))
    return groups


def load_rules(path: str | Path) -> list[RuleGroup]:
    """Load and validate a rule file from disk."""
    try:
        text = Path(path).read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"cannot read rule file {path}: {exc}") from exc
    return parse_rules(text)


def all_rules(groups: list[RuleGroup]) -> list[Rule]:
    return [rule for group in groups for rule in group.rules]
