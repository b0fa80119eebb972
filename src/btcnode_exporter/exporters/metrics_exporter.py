#!/usr/bin/env python3
"""
Metrics Exporter HTTP Server

aiohttp application serving the current registry snapshot to Prometheus.

Endpoints:
- /metrics: Prometheus text exposition of the current snapshot
- /health: Liveness / readiness for container health checks
- /: Landing page

Serving a request never triggers collection; each scrape reads the
registry once and renders exactly that snapshot.
"""

import logging
from typing import Optional

from aiohttp import web

from btcnode_exporter import __version__
from btcnode_exporter.exporters.text_format import CONTENT_TYPE, render_snapshot
from btcnode_exporter.monitor.registry import MetricRegistry
from btcnode_exporter.monitor.self_metrics import SelfMetrics


logger = logging.getLogger(__name__)


LANDING_PAGE = """<html>
<head><title>Bitcoin Node Exporter</title></head>
<body>
<h1>Bitcoin Node Exporter</h1>
<p>Version {version}</p>
<ul>
<li><a href="/metrics">Metrics</a></li>
<li><a href="/health">Health</a></li>
</ul>
</body>
</html>
"""


async def metrics_handler(request):
    """
    Prometheus scrape endpoint

    Returns:
        200 with the exposition text
        500 if rendering fails
    """
    registry: MetricRegistry = request.app['registry']
    self_metrics: Optional[SelfMetrics] = request.app['self_metrics']

    snapshot = registry.current()

    try:
        body = render_snapshot(snapshot, include_timestamps=request.app['render_timestamps'])
        if self_metrics is not None:
            body += self_metrics.render().decode('utf-8')
    except Exception as e:
        logger.error(f"Failed to render snapshot {snapshot.sequence}: {e}", exc_info=True)
        if self_metrics is not None:
            self_metrics.observe_scrape(500)
        return web.Response(
            text="Internal error while rendering metrics\n",
            status=500,
            content_type='text/plain'
        )

    # a body never counts its own request
    if self_metrics is not None:
        self_metrics.observe_scrape(200)

    return web.Response(
        body=body.encode('utf-8'),
        status=200,
        headers={'Content-Type': CONTENT_TYPE}
    )


async def health_check_handler(request):
    """
    HTTP health check endpoint

    Returns:
        200 OK if the last cycle reached the node with valid credentials
        200 DEGRADED if the node is unreachable or rejects the credentials
        503 Service Unavailable before the first collection cycle completes
    """
    snapshot = request.app['registry'].current()

    if snapshot.is_bootstrap:
        return web.Response(
            text="UNAVAILABLE\nCollection: no cycle completed yet\n",
            status=503,
            content_type='text/plain'
        )

    node_up = snapshot.value("btc_exporter_node_up") == 1
    auth_failure = snapshot.value("btc_exporter_auth_failure") == 1
    stale_groups = [
        sample.label_values[0]
        for sample in snapshot.samples()
        if sample.descriptor.name == "btc_exporter_group_stale" and sample.value == 1
    ]

    cycle_line = f"Cycle: {snapshot.sequence}\n"

    if auth_failure:
        return web.Response(
            text=f"DEGRADED\nNode: authentication failed\n{cycle_line}",
            status=200,
            content_type='text/plain'
        )
    if not node_up:
        return web.Response(
            text=f"DEGRADED\nNode: unreachable\n{cycle_line}",
            status=200,
            content_type='text/plain'
        )

    stale_line = f"Stale groups: {', '.join(stale_groups)}\n" if stale_groups else ""
    return web.Response(
        text=f"OK\nNode: reachable\n{cycle_line}{stale_line}",
        status=200,
        content_type='text/plain'
    )


async def index_handler(request):
    return web.Response(text=LANDING_PAGE.format(version=__version__), content_type='text/html')


def create_app(
    registry: MetricRegistry,
    self_metrics: Optional[SelfMetrics] = None,
    render_timestamps: bool = False
) -> web.Application:
    """
    Build the exporter web application

    Args:
        registry: Registry whose current snapshot is served
        self_metrics: Exporter self-instrumentation appended to /metrics (None to omit)
        render_timestamps: Emit sample timestamps in the exposition
    """
    app = web.Application()
    app['registry'] = registry
    app['self_metrics'] = self_metrics
    app['render_timestamps'] = render_timestamps

    app.router.add_get('/metrics', metrics_handler)
    app.router.add_get('/health', health_check_handler)
    app.router.add_get('/', index_handler)

    return app


async def start_metrics_server(
    registry: MetricRegistry,
    bind_address: str = '0.0.0.0',
    port: int = 9332,
    self_metrics: Optional[SelfMetrics] = None,
    render_timestamps: bool = False
) -> web.AppRunner:
    """
    Start the HTTP server

    Raises:
        OSError: If the address cannot be bound

    Returns:
        web.AppRunner instance (call cleanup() on shutdown)
    """
    app = create_app(registry, self_metrics=self_metrics, render_timestamps=render_timestamps)

    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, bind_address, port)
    try:
        await site.start()
    except OSError:
        await runner.cleanup()
        raise

    logger.info(f"✓ Metrics server started on http://{bind_address}:{port}/metrics")
    return runner
