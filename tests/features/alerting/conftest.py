"""Step definitions for the alerting pipeline scenarios.

Each scenario drives AlertingRuntime.run_once at explicit timestamps, so
timer behaviour is deterministic and no real time passes.
"""

from dataclasses import dataclass, field

import pytest
from pytest_bdd import given, parsers, then, when

from alertpipe.core.config import RouteConfig, RouterConfig
from alertpipe.core.durations import parse_duration
from alertpipe.core.engine import RuleEngine
from alertpipe.core.models import AlertState
from alertpipe.core.router import AlertRouter
from alertpipe.core.rules import Rule
from alertpipe.runtime.sampler import Sampler
from alertpipe.runtime.tasks import AlertingRuntime
from tests.helpers import RecordingNotifier, StaticSource, run_async


@dataclass
class PipelineContext:
    """Mutable state shared by the steps of one scenario."""

    rules: list[Rule] = field(default_factory=list)
    router_config: RouterConfig | None = None
    source: StaticSource = field(default_factory=StaticSource)
    notifier: RecordingNotifier = field(default_factory=RecordingNotifier)
    runtime: AlertingRuntime | None = None
    now: float | None = None

    def build(self) -> AlertingRuntime:
        if self.runtime is None:
            assert self.router_config is not None
            self.runtime = AlertingRuntime(
                Sampler([self.source]),
                RuleEngine(self.rules),
                AlertRouter(self.router_config, self.notifier),
            )
        return self.runtime

    def set_up(self, instance: str, value: float) -> None:
        points = [
            (labels, v)
            for labels, v in self.source.series.get("up", [])
            if labels["instance"] != instance
        ]
        points.append(({"instance": instance}, value))
        self.source.series["up"] = points


@pytest.fixture
def ctx() -> PipelineContext:
    return PipelineContext()


# === Background Steps ===
@given(
    parsers.parse('the rule "{name}" with expression "{expr}" held for {duration}')
)
def step_rule(ctx: PipelineContext, name: str, expr: str, duration: str) -> None:
    ctx.rules.append(Rule.create(name, expr, for_=duration))


@given(
    parsers.parse("a route grouping by {label} with a group_wait of {wait}")
)
def step_route(ctx: PipelineContext, label: str, wait: str) -> None:
    ctx.router_config = RouterConfig(
        route=RouteConfig(
            receiver="web.hook",
            group_by=(label,),
            group_wait=parse_duration(wait),
            group_interval=300.0,
            repeat_interval=3600.0,
        )
    )


# === Target Steps ===
@given(parsers.parse('target "{instance}" reports up = {value:g}'))
@when(parsers.parse('target "{instance}" reports up = {value:g}'))
def step_target(ctx: PipelineContext, instance: str, value: float) -> None:
    ctx.set_up(instance, value)


# === Pipeline Steps ===
@when(parsers.parse("the pipeline runs every {step:d}s until {end:d}s"))
def step_run(ctx: PipelineContext, step: int, end: int) -> None:
    runtime = ctx.build()
    start = 0.0 if ctx.now is None else ctx.now + step
    moment = start
    while moment <= end:
        run_async(runtime.run_once(moment))
        ctx.now = moment
        moment += step


# === Assertion Steps ===
@then(parsers.parse('the alert "{name}" for "{instance}" is {state}'))
def step_alert_state(
    ctx: PipelineContext, name: str, instance: str, state: str
) -> None:
    assert ctx.runtime is not None
    matching = [
        alert
        for alert in ctx.runtime.engine.alerts()
        if alert.name == name and alert.labels.get("instance") == instance
    ]
    if state == "inactive":
        assert matching == []
    else:
        assert [alert.state for alert in matching] == [AlertState(state)]


@then(parsers.re(r"(?P<count>\d+) notifications? (was|were) sent"))
def step_notification_count(ctx: PipelineContext, count: str) -> None:
    assert len(ctx.notifier.sent) == int(count)


@then(parsers.parse('notification {index:d} contains the instances "{instances}"'))
def step_notification_alerts(
    ctx: PipelineContext, index: int, instances: str
) -> None:
    sent = ctx.notifier.sent[index - 1]
    assert sorted(alert.labels["instance"] for alert in sent.alerts) == sorted(
        instances.split(",")
    )
