#!/usr/bin/env python3
"""
Exporter Self-Instrumentation

prometheus_client metrics describing the exporter process itself
(scrapes served, cycle timings, skipped ticks, RPC outcomes), kept on a
dedicated CollectorRegistry together with the standard process,
platform and GC collectors. Appended to /metrics after the node
snapshot when server.self_metrics is enabled.
"""

import logging
from typing import Optional

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Histogram,
    generate_latest,
)
from prometheus_client.gc_collector import GCCollector
from prometheus_client.platform_collector import PlatformCollector
from prometheus_client.process_collector import ProcessCollector


logger = logging.getLogger(__name__)


CYCLE_BUCKETS = (0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0)


class SelfMetrics:
    """
    Process-level exporter metrics

    Usage:
        self_metrics = SelfMetrics()
        self_metrics.observe_scrape()
        payload = self_metrics.render()
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None, include_process: bool = True):
        """
        Args:
            registry: Registry to register into (a fresh one by default)
            include_process: Register process/platform/GC collectors
        """
        self.registry = registry or CollectorRegistry(auto_describe=True)

        if include_process:
            ProcessCollector(registry=self.registry)
            PlatformCollector(registry=self.registry)
            GCCollector(registry=self.registry)

        self.scrape_requests = Counter(
            "btc_exporter_scrape_requests",
            "Scrape requests served on /metrics",
            ["status"],
            registry=self.registry,
        )
        self.skipped_ticks = Counter(
            "btc_exporter_skipped_ticks",
            "Scheduler ticks skipped because a collection cycle was still running",
            registry=self.registry,
        )
        self.cycle_seconds = Histogram(
            "btc_exporter_collection_cycle_seconds",
            "Duration of collection cycles",
            buckets=CYCLE_BUCKETS,
            registry=self.registry,
        )
        self.rpc_requests = Counter(
            "btc_exporter_rpc_requests",
            "Node RPC calls by method and outcome",
            ["method", "outcome"],
            registry=self.registry,
        )

    def observe_scrape(self, status: int = 200):
        self.scrape_requests.labels(status=str(status)).inc()

    def observe_skipped_ticks(self, count: int):
        if count > 0:
            self.skipped_ticks.inc(count)

    def observe_cycle(self, duration: float):
        self.cycle_seconds.observe(duration)

    def observe_rpc(self, method: str, outcome: str):
        self.rpc_requests.labels(method=method, outcome=outcome).inc()

    def render(self) -> bytes:
        """Exposition text for everything in this registry"""
        return generate_latest(self.registry)
