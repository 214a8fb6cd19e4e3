"""Rule engine: evaluates alerting rules and drives alert state machines.

Every alert instance (one per rule and distinct label combination) moves
through ``pending -> firing``; an instance whose labels stop matching
becomes ``resolved`` immediately and is dropped on the next evaluation, so
the router always sees the resolution for exactly one batch.
"""

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field

from alertpipe.core.exceptions import EvaluationError
from alertpipe.core.expression import NAME_LABEL, Evaluator, VectorSample
from alertpipe.core.models import Alert, AlertBatch, AlertState, Snapshot, fingerprint
from alertpipe.core.registry import MetricRegistry
from alertpipe.core.rules import Rule, RuleGroup

logger = logging.getLogger(__name__)

_PHASE_ORDER = {
    AlertState.INACTIVE: 0,
    AlertState.RESOLVED: 1,
    AlertState.PENDING: 2,
    AlertState.FIRING: 3,
}


@dataclass
class _Instance:
    labels: dict[str, str]
    state: AlertState
    active_at: float
    value: float
    annotations: dict[str, str] = field(default_factory=dict)
    fired_at: float | None = None
    resolved_at: float | None = None

    def to_alert(self, name: str) -> Alert:
        return Alert(
            name=name,
            labels=dict(self.labels),
            annotations=dict(self.annotations),
            state=self.state,
            active_at=self.active_at,
            value=self.value,
            fired_at=self.fired_at,
            resolved_at=self.resolved_at,
        )


@dataclass
class RuleState:
    """Mutable evaluation state of one rule.

    Attributes:
        rule: The rule this state belongs to.
        phase: Most advanced phase among the rule's instances.
        phase_since: When the rule entered its current phase.
        last_evaluated_at: Time of the most recent evaluation attempt.
        last_error: Message of the last evaluation error, if the most
            recent attempt failed.
        instances: Alert instances keyed by label fingerprint.
    """

    rule: Rule
    phase: AlertState = AlertState.INACTIVE
    phase_since: float | None = None
    last_evaluated_at: float | None = None
    last_error: str | None = None
    instances: dict[str, _Instance] = field(default_factory=dict)

    def alerts(self) -> list[Alert]:
        return [
            instance.to_alert(self.rule.name)
            for instance in self.instances.values()
            if instance.state is not AlertState.INACTIVE
        ]

    def _update_phase(self, now: float) -> None:
        phase = max(
            (instance.state for instance in self.instances.values()),
            key=_PHASE_ORDER.__getitem__,
            default=AlertState.INACTIVE,
        )
        if phase is not self.phase:
            self.phase = phase
            self.phase_since = now


def _flatten(rules: Iterable[Rule | RuleGroup]) -> tuple[list[Rule], dict[str, float]]:
    flat: list[Rule] = []
    intervals: dict[str, float] = {}
    for item in rules:
        if isinstance(item, RuleGroup):
            flat.extend(item.rules)
            if item.interval is not None:
                intervals[item.name] = item.interval
        else:
            flat.append(item)
    return flat, intervals


class RuleEngine:
    """Evaluates rules against snapshot windows.

    Evaluation errors are isolated per rule: the failing rule keeps its
    previous state for the tick, the error is logged and counted, and every
    other rule is evaluated normally.

    Args:
        rules: Rules or rule groups to evaluate, in order.
        registry: If given, evaluation counters are registered on it.
    """

    def __init__(
        self,
        rules: Iterable[Rule | RuleGroup],
        registry: MetricRegistry | None = None,
    ) -> None:
        flat, self._group_intervals = _flatten(rules)
        self._states = [RuleState(rule) for rule in flat]
        self._evaluations = None
        self._failures = None
        if registry is not None:
            self._evaluations = registry.counter(
                "alertpipe_rule_evaluations_total",
                "Rule evaluations by rule group",
                ["rule_group"],
            )
            self._failures = registry.counter(
                "alertpipe_rule_evaluation_failures_total",
                "Failed rule evaluations by rule group",
                ["rule_group"],
            )

    @property
    def rules(self) -> list[Rule]:
        return [state.rule for state in self._states]

    def states(self) -> list[RuleState]:
        return list(self._states)

    def state(self, name: str) -> RuleState:
        """Return the state of the first rule with the given name."""
        for state in self._states:
            if state.rule.name == name:
                return state
        raise KeyError(name)

    def alerts(self) -> list[Alert]:
        """All pending, firing and just-resolved alerts."""
        return [alert for state in self._states for alert in state.alerts()]

    def reload(self, rules: Iterable[Rule | RuleGroup]) -> None:
        """Replace the rule set, keeping state for unchanged rules."""
        flat, intervals = _flatten(rules)
        previous = list(self._states)
        states = []
        for rule in flat:
            kept = next((s for s in previous if s.rule == rule), None)
            if kept is not None:
                previous.remove(kept)
                states.append(kept)
            else:
                states.append(RuleState(rule))
        self._states = states
        self._group_intervals = intervals
        logger.info(
            "Rules reloaded", extra={"rules": len(states), "dropped": len(previous)}
        )

    def evaluate(
        self, window: Sequence[Snapshot], now: float | None = None
    ) -> AlertBatch:
        """Evaluate every rule against a snapshot window.

        Args:
            window: Snapshots in timestamp order; the newest is "now" for
                instant selectors.
            now: Evaluation time used for state transitions. Defaults to
                the newest snapshot's timestamp.

        Returns:
            AlertBatch with every pending, firing and resolved alert.
        """
        if not window:
            return AlertBatch(timestamp=now or 0.0)
        if now is None:
            now = window[-1].timestamp
        evaluator = Evaluator(window)
        for state in self._states:
            if self._due(state, now):
                self._evaluate_rule(state, evaluator, now)
        return AlertBatch(timestamp=now, alerts=tuple(self.alerts()))

    def _due(self, state: RuleState, now: float) -> bool:
        interval = self._group_intervals.get(state.rule.group)
        if interval is None or state.last_evaluated_at is None:
            return True
        return now - state.last_evaluated_at >= interval

    def _record_failure(self, state: RuleState, exc: Exception) -> None:
        state.last_error = str(exc)
        if self._failures is not None:
            self._failures.labels(state.rule.group).inc()

    def _evaluate_rule(
        self, state: RuleState, evaluator: Evaluator, now: float
    ) -> None:
        rule = state.rule
        state.last_evaluated_at = now
        if self._evaluations is not None:
            self._evaluations.labels(rule.group).inc()
        try:
            matches = self._matches(rule, evaluator)
        except EvaluationError as exc:
            self._record_failure(state, exc)
            logger.warning(
                "Rule evaluation failed",
                extra={"rule": rule.name, "rule_group": rule.group, "error": str(exc)},
            )
            return
        except Exception as exc:
            self._record_failure(state, exc)
            logger.exception(
                "Unexpected error evaluating rule",
                extra={"rule": rule.name, "rule_group": rule.group, "error": str(exc)},
            )
            return
        state.last_error = None

        for key, instance in list(state.instances.items()):
            if key in matches:
                continue
            if instance.state in (AlertState.PENDING, AlertState.FIRING):
                was_firing = instance.state is AlertState.FIRING
                instance.state = AlertState.RESOLVED
                instance.resolved_at = now
                if was_firing:
                    logger.info(
                        "Alert resolved",
                        extra={"rule": rule.name, "fingerprint": key},
                    )
            else:
                del state.instances[key]

        for key, (labels, series_labels, value) in matches.items():
            instance = state.instances.get(key)
            if instance is None or instance.state is AlertState.RESOLVED:
                instance = _Instance(
                    labels=labels, state=AlertState.PENDING, active_at=now, value=value
                )
                state.instances[key] = instance
            instance.value = value
            instance.annotations = rule.render_annotations(series_labels, value)
            held = now - instance.active_at >= rule.for_
            if instance.state is AlertState.PENDING and held:
                instance.state = AlertState.FIRING
                instance.fired_at = now
                logger.info(
                    "Alert firing",
                    extra={"rule": rule.name, "fingerprint": key, "value": value},
                )

        state._update_phase(now)

    @staticmethod
    def _matches(
        rule: Rule, evaluator: Evaluator
    ) -> dict[str, tuple[dict[str, str], dict[str, str], float]]:
        result = evaluator.evaluate(rule.expression)
        if isinstance(result, float):
            raise EvaluationError(f"{rule.expr!r} returned a scalar")
        matches: dict[str, tuple[dict[str, str], dict[str, str], float]] = {}
        for sample in result:
            assert isinstance(sample, VectorSample)
            series_labels = {k: v for k, v in sample.labels.items() if k != NAME_LABEL}
            labels = {**series_labels, **rule.labels, "alertname": rule.name}
            key = fingerprint(labels)
            if key in matches:
                raise EvaluationError(
                    f"{rule.expr!r} produced duplicate alert labels {labels}"
                )
            matches[key] = (labels, series_labels, sample.value)
        return matches
