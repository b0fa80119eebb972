#!/usr/bin/env python3
"""
Bitcoin Node Exporter - Main

Wires the pieces together: loads configuration, builds the metric
catalog, starts the collection scheduler and the /metrics HTTP server,
and shuts both down cleanly on SIGINT / SIGTERM.

Exit codes:
    0: graceful shutdown
    1: unrecoverable startup failure (e.g. port already in use)
    2: invalid configuration
"""

import asyncio
import logging
import signal
import sys
from typing import Mapping, Optional

from btcnode_exporter import __version__
from btcnode_exporter.clients.bitcoin_rpc_client import BitcoinRPCClient
from btcnode_exporter.clients.errors import ConfigError
from btcnode_exporter.exporters.metrics_exporter import start_metrics_server
from btcnode_exporter.monitor.catalog import build_catalog
from btcnode_exporter.monitor.collector import MetricCollector
from btcnode_exporter.monitor.config import ExporterConfig
from btcnode_exporter.monitor.registry import MetricRegistry
from btcnode_exporter.monitor.scheduler import CollectionScheduler
from btcnode_exporter.monitor.self_metrics import SelfMetrics


# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(sys.stdout)
    ]
)

logger = logging.getLogger(__name__)


EXIT_OK = 0
EXIT_STARTUP_FAILURE = 1
EXIT_CONFIG_ERROR = 2


async def run_exporter(config: ExporterConfig, shutdown_event: Optional[asyncio.Event] = None) -> int:
    """
    Run the exporter until shutdown_event is set

    Args:
        config: Validated exporter configuration
        shutdown_event: Event that ends the run (SIGINT/SIGTERM set it when
            not supplied)

    Returns:
        Process exit code
    """
    if shutdown_event is None:
        shutdown_event = asyncio.Event()

    loop = asyncio.get_running_loop()
    installed_signals = []

    def request_shutdown(signum):
        logger.info(f"Received signal {signum}, initiating graceful shutdown...")
        shutdown_event.set()

    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, request_shutdown, signum)
            installed_signals.append(signum)
        except (NotImplementedError, RuntimeError):
            # Not the main thread, or no signal support on this platform
            logger.debug(f"Could not install handler for signal {signum}")

    runner = None
    scheduler = None
    scheduler_task = None

    try:
        catalog = build_catalog(config.collection.fee_targets)
        self_metrics = SelfMetrics() if config.server.self_metrics else None

        rpc_client = BitcoinRPCClient(config.node, self_metrics=self_metrics)
        collector = MetricCollector(
            catalog,
            rpc_client,
            retries=config.collection.retries,
            self_metrics=self_metrics
        )
        registry = MetricRegistry(collector.last_snapshot)

        logger.info("Starting metrics server...")
        try:
            runner = await start_metrics_server(
                registry,
                bind_address=config.server.bind_address,
                port=config.server.port,
                self_metrics=self_metrics,
                render_timestamps=config.server.render_timestamps
            )
        except OSError as e:
            logger.error(
                f"Cannot listen on {config.server.bind_address}:{config.server.port}: {e}"
            )
            return EXIT_STARTUP_FAILURE

        scheduler = CollectionScheduler(
            collector,
            registry,
            interval_seconds=config.collection.interval_seconds,
            self_metrics=self_metrics
        )
        scheduler_task = asyncio.create_task(scheduler.run())

        logger.info("=" * 70)
        logger.info("Bitcoin node exporter started")
        logger.info("=" * 70)
        logger.info(f"Polling {config.node.url} every {config.collection.interval_seconds}s (Press Ctrl+C to stop)")

        shutdown_waiter = asyncio.create_task(shutdown_event.wait())
        done, _ = await asyncio.wait(
            [scheduler_task, shutdown_waiter],
            return_when=asyncio.FIRST_COMPLETED
        )

        if scheduler_task in done and not shutdown_event.is_set():
            shutdown_waiter.cancel()
            # run() only returns after stop(); surface the reason it ended
            scheduler_task.result()
            logger.error("Collection scheduler exited unexpectedly")
            return EXIT_STARTUP_FAILURE

        return EXIT_OK

    finally:
        logger.info("Shutting down gracefully...")

        if scheduler is not None:
            scheduler.stop()
        if scheduler_task is not None:
            logger.info("Waiting for in-flight collection cycle...")
            try:
                await scheduler_task
            except Exception as e:
                logger.error(f"Error stopping scheduler: {e}", exc_info=True)

        if runner is not None:
            try:
                logger.info("Stopping metrics server...")
                await runner.cleanup()
            except Exception as e:
                logger.error(f"Error stopping metrics server: {e}")

        for signum in installed_signals:
            loop.remove_signal_handler(signum)

        logger.info("✓ Shutdown complete")


def main(environ: Optional[Mapping[str, str]] = None) -> int:
    """
    Main entry point

    Args:
        environ: Environment to read configuration from (os.environ plus
            .env file when None)

    Returns:
        Process exit code
    """
    try:
        config = ExporterConfig.from_env(environ)
    except ConfigError as e:
        logger.error(f"Invalid configuration: {e}")
        return EXIT_CONFIG_ERROR

    logging.getLogger().setLevel(config.log_level)

    logger.info("=" * 70)
    logger.info(f"Bitcoin Node Exporter v{__version__}")
    logger.info("=" * 70)
    logger.info(f"Configuration:\n{config}")
    logger.info("=" * 70)

    try:
        return asyncio.run(run_exporter(config))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return EXIT_OK
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        return EXIT_STARTUP_FAILURE


def cli():
    sys.exit(main())


if __name__ == "__main__":
    cli()
