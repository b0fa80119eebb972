#!/usr/bin/env python3
"""
Metric Collector

Runs one collection cycle: queries the node once per metric group, maps
each successful result to samples, carries forward the previous values
(flagged stale) for groups that failed, and returns a complete, new
RegistrySnapshot. A failing group never affects the values or freshness
of any other group.
"""

import asyncio
import logging
import math
import time
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from btcnode_exporter.clients.bitcoin_rpc_client import BitcoinRPCClient, NodeQueryResult
from btcnode_exporter.clients.errors import CollectionError, ErrorKind, ParseError
from btcnode_exporter.handlers.fields import SeriesKey, series
from btcnode_exporter.monitor.catalog import MetricCatalog, MetricGroup
from btcnode_exporter.monitor.registry import MetricSample, RegistrySnapshot
from btcnode_exporter.monitor.self_metrics import SelfMetrics


logger = logging.getLogger(__name__)


DEFAULT_RETRY_DELAY = 0.2  # seconds between attempts after a transient error


class MetricCollector:
    """
    Builds one RegistrySnapshot per collection cycle

    Failure handling per group:
    - transient network / RPC error / parse error: previous values kept and
      marked stale, consecutive-failure and error counters incremented
    - auth failure: same, plus btc_exporter_auth_failure raised to 1 until a
      query authenticates again

    Transient network errors are retried up to `retries` times within the
    cycle; nothing else is retried before the next cycle.
    """

    def __init__(
        self,
        catalog: MetricCatalog,
        rpc_client: BitcoinRPCClient,
        retries: int = 1,
        retry_delay: float = DEFAULT_RETRY_DELAY,
        self_metrics: Optional[SelfMetrics] = None,
        clock: Callable[[], float] = time.time
    ):
        """
        Initialize collector

        Args:
            catalog: Metric catalog (groups, descriptors, health series)
            rpc_client: Node RPC adapter
            retries: Extra attempts for transient network errors
            retry_delay: Seconds to wait between attempts
            self_metrics: Optional exporter self-instrumentation
            clock: Wall clock for sample timestamps
        """
        self.catalog = catalog
        self.rpc_client = rpc_client
        self.retries = retries
        self.retry_delay = retry_delay
        self._self_metrics = self_metrics
        self._clock = clock

        group_names = [g.name for g in catalog.groups]

        self._cycles = 0
        self._consecutive_failures: Dict[str, int] = {name: 0 for name in group_names}
        self._last_success: Dict[str, float] = {name: 0.0 for name in group_names}
        self._errors_total: Dict[tuple, int] = {
            (name, kind): 0 for name in group_names for kind in ErrorKind
        }
        self._auth_failing = False

        # Last logged failure kind per group (repeat failures log at DEBUG)
        self._logged_failure: Dict[str, Optional[ErrorKind]] = {name: None for name in group_names}

        self._previous = self.bootstrap_snapshot()

        logger.info(
            f"MetricCollector initialized: {len(group_names)} groups, "
            f"{len(catalog.all_series())} series, retries={retries}"
        )

    def bootstrap_snapshot(self) -> RegistrySnapshot:
        """
        Snapshot served before the first cycle completes

        Every node series is present with value NaN and marked stale, so
        scrapers see the complete, typed catalog from process start.
        """
        now = self._clock()
        samples = {}

        for group in self.catalog.groups:
            for key in group.series:
                samples[key] = self._sample(key, math.nan, now, stale=True)

        health = self._health_values(
            node_up=False,
            cycle_error=False,
            duration=0.0,
            finished_at=0.0,
            stale_groups={g.name for g in self.catalog.groups},
        )
        for key, value in health.items():
            samples[key] = self._sample(key, value, now)

        return self._snapshot(samples, sequence=0, created_at=now)

    async def run_cycle(self) -> RegistrySnapshot:
        """
        Query every group once and build the next snapshot

        Returns:
            New immutable RegistrySnapshot containing every catalog series
        """
        started = time.monotonic()
        previous = self._previous

        samples: Dict[SeriesKey, MetricSample] = {}
        fresh_results: Dict[str, Any] = {}
        stale_groups = set()
        cycle_error = False
        any_success = False
        auth_failed = False
        auth_succeeded = False

        for group in self.catalog.groups:
            params = None

            if group.depends_on is not None:
                dependency = fresh_results.get(group.depends_on)
                if dependency is None:
                    logger.debug(f"[{group.name}] skipped: {group.depends_on} has no fresh result this cycle")
                    samples.update(self._carry_forward(group, previous))
                    stale_groups.add(group.name)
                    continue
                try:
                    params = group.params_from(dependency)
                except CollectionError as e:
                    e.group = group.name
                    self._record_failure(group, e)
                    samples.update(self._carry_forward(group, previous))
                    stale_groups.add(group.name)
                    cycle_error = True
                    continue

            outcome = await self._query_with_retry(group, params)

            if isinstance(outcome, NodeQueryResult):
                # Any reply (even a mapping failure) proves the credentials work
                auth_succeeded = True
                try:
                    values = self._map(group, outcome)
                except CollectionError as e:
                    e.group = group.name
                    outcome = e
                else:
                    for key, value in values.items():
                        samples[key] = self._sample(key, value, outcome.timestamp)
                    fresh_results[group.name] = outcome.result
                    self._record_success(group, outcome.timestamp)
                    any_success = True
                    continue
            elif outcome.kind is ErrorKind.AUTH_FAILURE:
                auth_failed = True
            elif outcome.kind is ErrorKind.RPC_PROTOCOL_ERROR:
                # An RPC error reply also means we authenticated
                auth_succeeded = True

            self._record_failure(group, outcome)
            samples.update(self._carry_forward(group, previous))
            stale_groups.add(group.name)
            cycle_error = True

        self._update_auth_state(auth_failed, auth_succeeded)

        self._cycles += 1
        duration = time.monotonic() - started
        finished_at = self._clock()

        health = self._health_values(
            node_up=any_success,
            cycle_error=cycle_error,
            duration=duration,
            finished_at=finished_at,
            stale_groups=stale_groups,
        )
        for key, value in health.items():
            samples[key] = self._sample(key, value, finished_at)

        snapshot = self._snapshot(samples, sequence=self._cycles, created_at=finished_at)
        self._previous = snapshot

        if self._self_metrics is not None:
            self._self_metrics.observe_cycle(duration)

        logger.info(
            f"Collection cycle {self._cycles} finished in {duration:.3f}s: "
            f"{len(self.catalog.groups) - len(stale_groups)}/{len(self.catalog.groups)} groups fresh"
        )

        return snapshot

    async def _query_with_retry(
        self,
        group: MetricGroup,
        params: Optional[tuple]
    ) -> Union[NodeQueryResult, CollectionError]:
        attempts = self.retries + 1

        for attempt in range(1, attempts + 1):
            try:
                outcome = await self.rpc_client.query(group, params)
            except Exception as e:
                logger.error(f"[{group.name}] {group.method} query failed unexpectedly: {e}", exc_info=True)
                outcome = ParseError(f"{group.method} query failed unexpectedly: {e!r}", group=group.name)

            if isinstance(outcome, NodeQueryResult):
                return outcome
            if outcome.kind is not ErrorKind.TRANSIENT_NETWORK or attempt == attempts:
                return outcome

            logger.debug(
                f"[{group.name}] transient failure (attempt {attempt}/{attempts}), "
                f"retrying in {self.retry_delay}s: {outcome.message}"
            )
            await asyncio.sleep(self.retry_delay)

        return outcome

    def _map(self, group: MetricGroup, outcome: NodeQueryResult) -> Dict[SeriesKey, float]:
        """Apply the group's mapping rules and check the result covers its series exactly"""
        try:
            values = group.mapper(outcome.result)
        except CollectionError:
            raise
        except Exception as e:
            logger.error(f"[{group.name}] mapping {group.method} result failed: {e}", exc_info=True)
            raise ParseError(f"mapping {group.method} result failed: {e!r}") from e

        expected = set(group.series)
        produced = set(values)
        if produced != expected:
            missing = sorted(expected - produced)
            extra = sorted(produced - expected)
            raise ParseError(f"{group.method} mapped to wrong series (missing={missing}, extra={extra})")

        return {key: float(value) for key, value in values.items()}

    def _carry_forward(self, group: MetricGroup, previous: RegistrySnapshot) -> Dict[SeriesKey, MetricSample]:
        return {key: previous[key].as_stale() for key in group.series}

    def _record_success(self, group: MetricGroup, timestamp: float):
        failures = self._consecutive_failures[group.name]
        if failures:
            logger.info(f"[{group.name}] recovered after {failures} failed cycle(s)")

        self._consecutive_failures[group.name] = 0
        self._last_success[group.name] = timestamp
        self._logged_failure[group.name] = None

    def _record_failure(self, group: MetricGroup, error: CollectionError):
        self._consecutive_failures[group.name] += 1
        self._errors_total[(group.name, error.kind)] += 1

        failures = self._consecutive_failures[group.name]
        message = f"[{group.name}] {error.kind.value} (failure {failures}, serving stale values): {error.message}"

        if self._logged_failure[group.name] is error.kind:
            logger.debug(message)
        elif error.kind in (ErrorKind.PARSE_ERROR, ErrorKind.AUTH_FAILURE):
            logger.error(message)
        else:
            logger.warning(message)

        self._logged_failure[group.name] = error.kind

    def _update_auth_state(self, auth_failed: bool, auth_succeeded: bool):
        if auth_failed and not self._auth_failing:
            self._auth_failing = True
            logger.error(
                "Node rejected the configured RPC credentials. Metrics will stay stale "
                "until node.auth is fixed (btc_exporter_auth_failure=1)"
            )
        elif self._auth_failing and auth_succeeded and not auth_failed:
            self._auth_failing = False
            logger.info("Node accepted RPC credentials again (btc_exporter_auth_failure=0)")

    def _health_values(
        self,
        node_up: bool,
        cycle_error: bool,
        duration: float,
        finished_at: float,
        stale_groups: Iterable[str]
    ) -> Dict[SeriesKey, float]:
        stale = set(stale_groups)

        values = {
            series("btc_exporter_up"): 1.0,
            series("btc_exporter_node_up"): 1.0 if node_up else 0.0,
            series("btc_exporter_auth_failure"): 1.0 if self._auth_failing else 0.0,
            series("btc_exporter_last_cycle_duration_seconds"): duration,
            series("btc_exporter_last_cycle_error"): 1.0 if cycle_error else 0.0,
            series("btc_exporter_last_cycle_timestamp_seconds"): finished_at,
            series("btc_exporter_cycles_total"): float(self._cycles),
        }

        for group in self.catalog.groups:
            name = group.name
            values[series("btc_exporter_group_stale", name)] = 1.0 if name in stale else 0.0
            values[series("btc_exporter_group_consecutive_failures", name)] = float(self._consecutive_failures[name])
            values[series("btc_exporter_group_last_success_timestamp_seconds", name)] = self._last_success[name]
            for kind in ErrorKind:
                values[series("btc_exporter_group_errors_total", name, kind.value)] = float(
                    self._errors_total[(name, kind)]
                )

        return values

    def _sample(self, key: SeriesKey, value: float, timestamp: float, stale: bool = False) -> MetricSample:
        name, label_values = key
        return MetricSample(
            descriptor=self.catalog.descriptor(name),
            label_values=label_values,
            value=value,
            timestamp=timestamp,
            stale=stale,
        )

    def _snapshot(self, samples: Dict[SeriesKey, MetricSample], sequence: int, created_at: float) -> RegistrySnapshot:
        ordered: List[MetricSample] = [samples[key] for key in self.catalog.all_series()]
        return RegistrySnapshot(ordered, sequence=sequence, created_at=created_at)

    @property
    def last_snapshot(self) -> RegistrySnapshot:
        """Most recent snapshot built (the bootstrap snapshot until a cycle runs)"""
        return self._previous

    @property
    def cycles(self) -> int:
        return self._cycles

    @property
    def auth_failing(self) -> bool:
        return self._auth_failing

    def consecutive_failures(self, group_name: str) -> int:
        return self._consecutive_failures[group_name]

    def __repr__(self) -> str:
        failing = [name for name, count in self._consecutive_failures.items() if count]
        return f"MetricCollector(cycles={self._cycles}, failing={failing}, auth_failing={self._auth_failing})"
