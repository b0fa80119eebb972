#!/usr/bin/env python3
"""
Collection Scheduler

Drives the collector on a fixed interval. Ticks are aligned to
start + k * interval; each tick runs one collection cycle and publishes
its snapshot before the next tick is considered, so cycles never overlap.
Ticks that pass while a cycle is still running are skipped, not queued.
"""

import asyncio
import logging
import math
import time
from enum import Enum
from typing import Callable, Optional

from btcnode_exporter.monitor.collector import MetricCollector
from btcnode_exporter.monitor.registry import MetricRegistry
from btcnode_exporter.monitor.self_metrics import SelfMetrics


logger = logging.getLogger(__name__)


class SchedulerState(str, Enum):
    IDLE = "idle"
    RUNNING_CYCLE = "running_cycle"
    STOPPED = "stopped"


class CollectionScheduler:
    """
    Periodic driver for MetricCollector.run_cycle()

    Usage:
        scheduler = CollectionScheduler(collector, registry, interval_seconds=15)
        task = asyncio.create_task(scheduler.run())
        ...
        scheduler.stop()
        await task  # returns after the in-flight cycle (if any) completes
    """

    def __init__(
        self,
        collector: MetricCollector,
        registry: MetricRegistry,
        interval_seconds: float,
        self_metrics: Optional[SelfMetrics] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        if interval_seconds <= 0:
            raise ValueError(f"interval_seconds must be positive, got {interval_seconds}")

        self.collector = collector
        self.registry = registry
        self.interval = interval_seconds
        self._self_metrics = self_metrics
        self._clock = clock

        self._state = SchedulerState.IDLE
        self._stop_requested = False
        self._stop_event: Optional[asyncio.Event] = None

        self._cycles_run = 0
        self._failed_cycles = 0
        self._skipped_ticks = 0

    async def run(self):
        """
        Run cycles until stop() is called

        The first cycle runs immediately (tick 0).
        """
        if self._state is SchedulerState.STOPPED:
            logger.warning("Scheduler already stopped, not starting")
            return

        self._stop_event = asyncio.Event()
        if self._stop_requested:
            self._stop_event.set()

        start = self._clock()
        tick = 0

        logger.info(f"Collection scheduler started (interval: {self.interval}s)")

        try:
            while not self._stop_requested:
                await self._run_tick(tick)

                if self._stop_requested:
                    break

                now = self._clock()
                latest_due = math.floor((now - start) / self.interval)
                skipped = max(0, latest_due - tick)
                if skipped:
                    self._record_skipped(skipped, now - start - tick * self.interval)

                tick += skipped + 1
                delay = start + tick * self.interval - self._clock()

                if delay > 0:
                    try:
                        await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
                    except asyncio.TimeoutError:
                        pass
        finally:
            self._state = SchedulerState.STOPPED
            logger.info(
                f"Collection scheduler stopped after {self._cycles_run} cycles "
                f"({self._failed_cycles} failed, {self._skipped_ticks} ticks skipped)"
            )

    async def _run_tick(self, tick: int):
        self._state = SchedulerState.RUNNING_CYCLE
        try:
            snapshot = await self.collector.run_cycle()
        except Exception as e:
            self._failed_cycles += 1
            logger.error(f"Collection cycle at tick {tick} failed: {e}", exc_info=True)
        else:
            self.registry.publish(snapshot)
        finally:
            self._cycles_run += 1
            if self._state is SchedulerState.RUNNING_CYCLE:
                self._state = SchedulerState.IDLE

    def _record_skipped(self, count: int, cycle_elapsed: float):
        self._skipped_ticks += count
        if self._self_metrics is not None:
            self._self_metrics.observe_skipped_ticks(count)

        logger.warning(
            f"Collection cycle took {cycle_elapsed:.2f}s (interval {self.interval}s), "
            f"skipped {count} tick(s)"
        )

    def stop(self):
        """Stop ticking; an in-flight cycle is allowed to finish"""
        if self._stop_requested:
            return

        logger.info("Stopping collection scheduler...")
        self._stop_requested = True
        if self._stop_event is not None:
            self._stop_event.set()

    @property
    def state(self) -> SchedulerState:
        return self._state

    @property
    def cycles_run(self) -> int:
        return self._cycles_run

    @property
    def failed_cycles(self) -> int:
        return self._failed_cycles

    @property
    def skipped_ticks(self) -> int:
        return self._skipped_ticks

    def __repr__(self) -> str:
        return (
            f"CollectionScheduler(state={self._state.value}, interval={self.interval}s, "
            f"cycles={self._cycles_run}, skipped={self._skipped_ticks})"
        )
