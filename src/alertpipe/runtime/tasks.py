"""Periodic loops and the sampler -> engine -> router pipeline.

Each component runs on its own single periodic loop, so no component's
ticks ever overlap. Components exchange immutable values (snapshot windows,
alert batches) through Handoff slots at tick boundaries.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Generic, TypeVar

from alertpipe.core.engine import RuleEngine
from alertpipe.core.models import AlertBatch
from alertpipe.core.router import AlertRouter
from alertpipe.runtime.sampler import Sampler, SnapshotWindow

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Handoff(Generic[T]):
    """Latest-value slot between two periodic loops.

    A consumer that falls behind only ever sees the newest value; values it
    has already taken are not returned again. With ``merge``, a value put
    while the previous one is still untaken becomes
    ``merge(previous, value)`` instead of replacing it.
    """

    def __init__(self, merge: Callable[[T, T], T] | None = None) -> None:
        self._value: T | None = None
        self._merge = merge
        self._version = 0
        self._taken = 0

    def put(self, value: T) -> None:
        untaken = self._taken != self._version
        if self._merge is not None and untaken and self._value is not None:
            value = self._merge(self._value, value)
        self._value = value
        self._version += 1

    def take(self) -> T | None:
        """Return the newest value if it has not been taken yet."""
        if self._taken == self._version:
            return None
        self._taken = self._version
        return self._value

    def peek(self) -> T | None:
        return self._value


class PeriodicTask:
    """Runs an async tick every ``interval`` seconds, one tick at a time.

    A tick that overruns its interval causes the ticks that fell due in the
    meantime to be skipped (and logged) rather than run back to back.
    Exceptions raised by a tick are logged and do not stop the loop.
    """

    def __init__(
        self, name: str, interval: float, tick: Callable[[], Awaitable[None]]
    ) -> None:
        if interval <= 0:
            raise ValueError(f"{name}: interval must be positive")
        self.name = name
        self.interval = interval
        self._tick = tick
        self._stopping = asyncio.Event()
        self._task: asyncio.Task[None] | None = None
        self.ticks = 0
        self.skipped = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run(self) -> None:
        loop = asyncio.get_running_loop()
        next_run = loop.time()
        while not self._stopping.is_set():
            try:
                await self._tick()
            except Exception:
                logger.exception("Periodic task tick failed", extra={"task": self.name})
            self.ticks += 1
            next_run += self.interval
            now = loop.time()
            if now > next_run:
                missed = int((now - next_run) // self.interval) + 1
                self.skipped += missed
                next_run += missed * self.interval
                logger.warning(
                    "Tick overran its interval, skipping",
                    extra={"task": self.name, "skipped": missed},
                )
            try:
                await asyncio.wait_for(
                    self._stopping.wait(), timeout=next_run - loop.time()
                )
            except TimeoutError:
                pass

    def start(self) -> None:
        if self.running:
            return
        self._stopping.clear()
        self._task = asyncio.create_task(self.run(), name=self.name)

    async def stop(self) -> None:
        """Stop after the current tick completes."""
        self._stopping.set()
        if self._task is not None:
            await self._task
            self._task = None


class AlertingRuntime:
    """Wires sampler, rule engine and router into three periodic loops.

    Args:
        sampler: Produces snapshot windows.
        engine: Evaluates rules against the newest window.
        router: Groups alerts and delivers notifications.
        scrape_interval: Seconds between snapshots.
        evaluation_interval: Seconds between rule evaluations.
        router_interval: Seconds between router flushes.
        clock: Wall-clock time source.
    """

    def __init__(
        self,
        sampler: Sampler,
        engine: RuleEngine,
        router: AlertRouter,
        scrape_interval: float = 15.0,
        evaluation_interval: float = 15.0,
        router_interval: float = 1.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.sampler = sampler
        self.engine = engine
        self.router = router
        self._clock = clock
        self.windows: Handoff[SnapshotWindow] = Handoff()
        self.batches: Handoff[AlertBatch] = Handoff(merge=AlertBatch.followed_by)
        self.tasks = [
            PeriodicTask("sampler", scrape_interval, self.sample_tick),
            PeriodicTask("rule-engine", evaluation_interval, self.evaluate_tick),
            PeriodicTask("router", router_interval, self.route_tick),
        ]
        sampler.ensure_lookback(engine.rules)

    async def sample_tick(self) -> None:
        self.windows.put(await self.sampler.sample(self._clock()))

    async def evaluate_tick(self) -> None:
        window = self.windows.take()
        if window is None:
            return
        self.batches.put(self.engine.evaluate(window))

    async def route_tick(self) -> None:
        batch = self.batches.take()
        if batch is not None:
            self.router.update(batch)
        await self.router.flush(self._clock())

    async def run_once(self, now: float | None = None) -> AlertBatch:
        """Run one sample, evaluate and route step in order, then drain deliveries."""
        now = self._clock() if now is None else now
        window = await self.sampler.sample(now)
        batch = self.engine.evaluate(window, now)
        self.router.update(batch, now)
        await self.router.flush(now)
        await self.router.drain()
        return batch

    def start(self) -> None:
        for task in self.tasks:
            task.start()
        logger.info(
            "Alerting runtime started",
            extra={"rules": len(self.engine.rules), "lookback": self.sampler.lookback},
        )

    async def stop(self, grace: float = 10.0) -> None:
        """Stop the loops, then give in-flight notifications up to grace seconds."""
        for task in self.tasks:
            await task.stop()
        await self.router.drain(timeout=grace)
        logger.info("Alerting runtime stopped")
