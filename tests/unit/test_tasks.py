"""Tests for Handoff, PeriodicTask and AlertingRuntime."""

import asyncio

import pytest

from alertpipe.core.engine import RuleEngine
from alertpipe.core.models import AlertBatch, AlertState
from alertpipe.core.router import AlertRouter
from alertpipe.core.rules import Rule
from alertpipe.runtime.sampler import Sampler
from alertpipe.runtime.tasks import AlertingRuntime, Handoff, PeriodicTask
from tests.helpers import RecordingNotifier, StaticSource, make_alert


class TestHandoff:
    """Latest-value slot semantics."""

    @pytest.mark.core
    @pytest.mark.tier(0)
    def test_take_returns_each_value_once(self) -> None:
        slot: Handoff[int] = Handoff()

        assert slot.take() is None
        slot.put(1)
        assert slot.take() == 1
        assert slot.take() is None
        assert slot.peek() == 1

    @pytest.mark.core
    @pytest.mark.tier(0)
    @pytest.mark.tra("Runtime.Handoff.Latest")
    def test_slow_consumer_only_sees_newest(self) -> None:
        slot: Handoff[int] = Handoff()

        slot.put(1)
        slot.put(2)

        assert slot.take() == 2
        assert slot.take() is None

    @pytest.mark.core
    @pytest.mark.tier(0)
    def test_merge_combines_only_untaken_values(self) -> None:
        slot: Handoff[list[int]] = Handoff(merge=lambda old, new: old + new)

        slot.put([1])
        slot.put([2])
        assert slot.take() == [1, 2]

        slot.put([3])
        assert slot.take() == [3]

    @pytest.mark.core
    @pytest.mark.tier(0)
    @pytest.mark.tra("Runtime.Handoff.CarryResolved")
    def test_batches_carry_resolutions_forward(self) -> None:
        firing_a = make_alert(instance="a")
        firing_b = make_alert(instance="b")
        resolved_a = make_alert(
            state=AlertState.RESOLVED, resolved_at=15.0, instance="a"
        )
        slot: Handoff[AlertBatch] = Handoff(merge=AlertBatch.followed_by)

        slot.put(AlertBatch(15.0, (resolved_a, firing_b)))
        slot.put(AlertBatch(30.0, (firing_b,)))
        merged = slot.take()

        assert merged is not None
        assert merged.timestamp == 30.0
        assert merged.alerts == (firing_b, resolved_a)

    @pytest.mark.core
    @pytest.mark.tier(0)
    def test_newer_report_replaces_carried_resolution(self) -> None:
        firing = make_alert(instance="a")
        resolved = make_alert(
            state=AlertState.RESOLVED, resolved_at=15.0, instance="a"
        )

        merged = AlertBatch(15.0, (resolved,)).followed_by(
            AlertBatch(30.0, (firing,))
        )

        assert merged.alerts == (firing,)


class TestPeriodicTask:
    """Tests for PeriodicTask."""

    @pytest.mark.core
    @pytest.mark.tier(1)
    async def test_ticks_until_stopped(self) -> None:
        calls = []

        async def tick() -> None:
            calls.append(1)

        task = PeriodicTask("t", 0.01, tick)
        task.start()
        await asyncio.sleep(0.05)
        await task.stop()

        assert not task.running
        assert task.ticks >= 2
        assert len(calls) == task.ticks

    @pytest.mark.core
    @pytest.mark.tier(1)
    @pytest.mark.tra("Runtime.Tasks.NoOverlap")
    async def test_ticks_never_overlap_and_overruns_are_skipped(
        self, captured_logs: pytest.LogCaptureFixture
    ) -> None:
        active = 0
        max_active = 0

        async def slow_tick() -> None:
            nonlocal active, max_active
            active += 1
            max_active = max(max_active, active)
            await asyncio.sleep(0.03)
            active -= 1

        task = PeriodicTask("slow", 0.01, slow_tick)
        task.start()
        await asyncio.sleep(0.1)
        await task.stop()

        assert max_active == 1
        assert task.skipped > 0
        messages = [r.msg for r in captured_logs.records]
        assert "Tick overran its interval, skipping" in messages

    @pytest.mark.core
    @pytest.mark.tier(1)
    async def test_tick_errors_are_logged_and_loop_continues(
        self, captured_logs: pytest.LogCaptureFixture
    ) -> None:
        async def broken() -> None:
            raise RuntimeError("tick failed")

        task = PeriodicTask("broken", 0.01, broken)
        task.start()
        await asyncio.sleep(0.05)
        await task.stop()

        assert task.ticks >= 2
        assert any(r.msg == "Periodic task tick failed" for r in captured_logs.records)

    @pytest.mark.core
    @pytest.mark.tier(0)
    def test_rejects_non_positive_interval(self) -> None:
        async def tick() -> None:
            return None

        with pytest.raises(ValueError):
            PeriodicTask("t", 0, tick)


def _runtime(
    source: StaticSource, notifier: RecordingNotifier, router_config
) -> AlertingRuntime:
    engine = RuleEngine([Rule.create("InstanceDown", "up == 0", for_="1m")])
    router = AlertRouter(router_config, notifier)
    return AlertingRuntime(Sampler([source]), engine, router, clock=lambda: 0.0)


class TestAlertingRuntime:
    """The sampler -> engine -> router pipeline."""

    @pytest.mark.integration
    @pytest.mark.tier(2)
    @pytest.mark.tra("Runtime.Pipeline.RunOnce")
    async def test_run_once_moves_alerts_through_the_pipeline(
        self, notifier: RecordingNotifier, router_config
    ) -> None:
        source = StaticSource({"up": [({"instance": "a"}, 0.0)]})
        runtime = _runtime(source, notifier, router_config)

        first = await runtime.run_once(0.0)
        second = await runtime.run_once(60.0)
        await runtime.run_once(90.0)

        assert first.alerts[0].state is AlertState.PENDING
        assert second.alerts[0].state is AlertState.FIRING
        assert len(notifier.sent) == 1
        assert notifier.sent[0].timestamp == 90.0

    @pytest.mark.core
    @pytest.mark.tier(1)
    def test_sampler_lookback_covers_rules(
        self, notifier: RecordingNotifier, router_config
    ) -> None:
        engine = RuleEngine([Rule.create("Slow", "up == 0", for_="1h")])
        sampler = Sampler([StaticSource()], lookback=60.0)

        AlertingRuntime(sampler, engine, AlertRouter(router_config, notifier))

        assert sampler.lookback == 3600.0

    @pytest.mark.integration
    @pytest.mark.tier(2)
    async def test_ticks_hand_values_forward(
        self, notifier: RecordingNotifier, router_config
    ) -> None:
        source = StaticSource({"up": [({"instance": "a"}, 0.0)]})
        runtime = _runtime(source, notifier, router_config)

        await runtime.evaluate_tick()
        assert runtime.batches.peek() is None

        await runtime.sample_tick()
        await runtime.evaluate_tick()
        batch = runtime.batches.peek()
        assert batch is not None
        assert batch.alerts[0].state is AlertState.PENDING

        await runtime.route_tick()
        assert runtime.batches.take() is None

    @pytest.mark.integration
    @pytest.mark.tier(2)
    @pytest.mark.tra("Runtime.Pipeline.ResolutionBetweenRouterTicks")
    async def test_resolution_survives_two_evaluations_between_router_ticks(
        self, notifier: RecordingNotifier, router_config
    ) -> None:
        clock = {"now": 0.0}
        source = StaticSource({"up": [({"instance": "a"}, 0.0)]})
        runtime = AlertingRuntime(
            Sampler([source]),
            RuleEngine([Rule.create("InstanceDown", "up == 0", for_="1m")]),
            AlertRouter(router_config, notifier),
            clock=lambda: clock["now"],
        )

        async def evaluate_at(now: float) -> None:
            clock["now"] = now
            await runtime.sample_tick()
            await runtime.evaluate_tick()

        async def route_at(now: float) -> None:
            clock["now"] = now
            await runtime.route_tick()
            await runtime.router.drain()

        await evaluate_at(0.0)
        await evaluate_at(60.0)
        await route_at(60.0)
        await route_at(90.0)
        assert len(notifier.sent) == 1

        source.series["up"] = [({"instance": "a"}, 1.0)]
        await evaluate_at(105.0)
        await evaluate_at(120.0)
        await route_at(130.0)
        await route_at(390.0)

        assert len(notifier.sent) == 2
        (resolved,) = notifier.sent[1].alerts
        assert resolved.state is AlertState.RESOLVED
        assert resolved.resolved_at == 105.0
        assert runtime.router.groups == []

    @pytest.mark.integration
    @pytest.mark.tier(2)
    async def test_start_and_stop(
        self, notifier: RecordingNotifier, router_config
    ) -> None:
        runtime = AlertingRuntime(
            Sampler([StaticSource()]),
            RuleEngine([]),
            AlertRouter(router_config, notifier),
            scrape_interval=0.01,
            evaluation_interval=0.01,
            router_interval=0.01,
        )

        runtime.start()
        await asyncio.sleep(0.05)
        await runtime.stop(grace=0.1)

        assert all(not task.running for task in runtime.tasks)
        assert all(task.ticks >= 1 for task in runtime.tasks)
