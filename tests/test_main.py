"""Tests for the exporter entry point."""

import asyncio
import socket

import pytest
from aiohttp.test_utils import unused_port

from btcnode_exporter.monitor import main as exporter_main
from btcnode_exporter.monitor.config import ExporterConfig


def _config(server_port, **collection):
    return ExporterConfig.from_dict({
        "node": {
            "host": "127.0.0.1",
            "port": unused_port(),
            "timeout_ms": 500,
            "auth": {"user": "bitcoin", "password": "secret"},
        },
        "server": {"bind_address": "127.0.0.1", "port": server_port, "self_metrics": False},
        "collection": dict({"retries": 0}, **collection),
    })


class TestMain:
    """Test suite for main() exit codes."""

    def test_invalid_config_exit_code(self):
        """Test that missing credentials exit with code 2."""
        assert exporter_main.main({"SERVER_PORT": "9400"}) == exporter_main.EXIT_CONFIG_ERROR

    def test_bad_port_exit_code(self):
        env = {"BTC_NODE_RPC_USER": "u", "BTC_NODE_RPC_PASSWORD": "p", "SERVER_PORT": "99999"}

        assert exporter_main.main(env) == exporter_main.EXIT_CONFIG_ERROR


class TestRunExporter:
    """Test suite for run_exporter."""

    @pytest.mark.asyncio
    async def test_graceful_shutdown(self):
        """Test that setting the shutdown event stops everything with exit code 0."""
        shutdown = asyncio.Event()
        config = _config(unused_port())

        task = asyncio.create_task(exporter_main.run_exporter(config, shutdown_event=shutdown))
        await asyncio.sleep(0.2)
        shutdown.set()

        assert await asyncio.wait_for(task, timeout=10) == exporter_main.EXIT_OK

    @pytest.mark.asyncio
    async def test_port_in_use_exit_code(self):
        """Test that failing to bind the metrics port exits with code 1."""
        blocker = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        blocker.bind(("127.0.0.1", 0))
        blocker.listen(1)
        port = blocker.getsockname()[1]

        try:
            code = await asyncio.wait_for(
                exporter_main.run_exporter(_config(port), shutdown_event=asyncio.Event()),
                timeout=10
            )
        finally:
            blocker.close()

        assert code == exporter_main.EXIT_STARTUP_FAILURE
