"""Periodic jobs with a single-flight guard and per-cycle deadlines."""

from __future__ import annotations

import asyncio
import time
from typing import Awaitable, Callable

import structlog

from paperpilot.monitoring.logging import bind_cycle
from paperpilot.monitoring.metrics import Metrics


class CycleDeadline:
    """Wall-clock budget for one cycle; work not started before expiry waits for the next tick."""

    def __init__(self, budget_sec: float, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._deadline = clock() + budget_sec

    def remaining(self) -> float:
        return max(0.0, self._deadline - self._clock())

    def expired(self) -> bool:
        return self._clock() >= self._deadline


class PeriodicJob:
    """Run ``func`` every ``interval_sec``; a tick that finds the previous run active is skipped."""

    def __init__(
        self,
        name: str,
        interval_sec: float,
        func: Callable[[], Awaitable[object]],
        metrics: Metrics | None = None,
    ) -> None:
        self.name = name
        self.interval_sec = interval_sec
        self.func = func
        self.metrics = metrics
        self._lock = asyncio.Lock()
        self._log = structlog.get_logger(__name__)
        self.runs = 0
        self.skipped = 0

    @property
    def running(self) -> bool:
        return self._lock.locked()

    async def run_once(self) -> bool:
        """Run one cycle unless one is already in flight. Returns whether it ran."""
        if self._lock.locked():
            self.skipped += 1
            self._log.warning("cycle_skipped_overlap", job=self.name)
            if self.metrics:
                self.metrics.cycle_skipped_total.labels(job=self.name).inc()
            return False
        async with self._lock:
            start = time.perf_counter()
            self.runs += 1
            with bind_cycle(self.name, self.runs):
                try:
                    await self.func()
                except Exception as exc:
                    self._log.error("cycle_failed", job=self.name, error=str(exc))
                    if self.metrics:
                        self.metrics.cycle_failed_total.labels(job=self.name).inc()
                finally:
                    duration = time.perf_counter() - start
                    if self.metrics:
                        self.metrics.cycle_duration_sec.labels(job=self.name).observe(duration)
                    self._log.info("cycle_finished", job=self.name, duration_sec=round(duration, 3))
        return True

    async def run_forever(self) -> None:
        """Tick on a fixed interval; each tick is its own task so a slow run does not delay ticks."""
        tasks: set[asyncio.Task] = set()
        last_tick = time.time()
        while True:
            now = time.time()
            if self.metrics:
                self.metrics.loop_last_tick_age_sec.labels(loop=self.name).set(now - last_tick)
            last_tick = now
            task = asyncio.create_task(self.run_once())
            tasks.add(task)
            task.add_done_callback(tasks.discard)
            await asyncio.sleep(self.interval_sec)
