"""Tests for exporter configuration."""

import pytest

from btcnode_exporter.clients.errors import ConfigError
from btcnode_exporter.monitor.config import ExporterConfig


def _config(**sections):
    data = {"node": {"auth": {"user": "bitcoin", "password": "secret"}}}
    for name, value in sections.items():
        if name == "node":
            data["node"].update(value)
        else:
            data[name] = value
    return data


class TestFromDict:
    """Test suite for ExporterConfig.from_dict."""

    def test_defaults(self):
        """Test defaults when only auth is given."""
        config = ExporterConfig.from_dict(_config())

        assert config.node.host == "127.0.0.1"
        assert config.node.port == 8332
        assert config.node.timeout_ms == 5000
        assert config.node.url == "http://127.0.0.1:8332/"
        assert config.server.bind_address == "0.0.0.0"
        assert config.server.port == 9332
        assert config.server.render_timestamps is False
        assert config.server.self_metrics is True
        assert config.collection.interval_seconds == 15
        assert config.collection.retries == 1
        assert config.collection.fee_targets == (2, 6, 12, 144)
        assert config.log_level == "INFO"

    def test_cookie_auth(self):
        """Test cookie file authentication."""
        config = ExporterConfig.from_dict({"node": {"auth": {"cookie_file": "/data/.cookie"}}})

        assert config.node.auth.uses_cookie
        assert config.node.auth.cookie_file == "/data/.cookie"

    @pytest.mark.parametrize("auth", [
        None,
        {},
        {"user": "bitcoin"},
        {"password": "secret"},
        {"user": "bitcoin", "password": "secret", "cookie_file": "/data/.cookie"},
    ])
    def test_invalid_auth(self, auth):
        """Test that auth must be exactly one of user/password or cookie file."""
        with pytest.raises(ConfigError):
            ExporterConfig.from_dict({"node": {"auth": auth}})

    @pytest.mark.parametrize("sections", [
        {"node": {"port": 0}},
        {"node": {"port": 70000}},
        {"node": {"port": "not-a-port"}},
        {"node": {"timeout_ms": 0}},
        {"node": {"timeout_ms": -5}},
        {"node": {"scheme": "ftp"}},
        {"server": {"port": 65536}},
        {"server": {"render_timestamps": "maybe"}},
        {"collection": {"interval_seconds": 0}},
        {"collection": {"interval_seconds": "nan"}},
        {"collection": {"retries": -1}},
        {"collection": {"fee_targets": [0]}},
        {"collection": {"fee_targets": "2,6,2000"}},
        {"log_level": "VERBOSE"},
    ])
    def test_invalid_values(self, sections):
        """Test that out-of-range and malformed options are rejected."""
        with pytest.raises(ConfigError):
            ExporterConfig.from_dict(_config(**sections))

    @pytest.mark.parametrize("host, url", [
        ("::1", "http://[::1]:8332/"),
        ("[::1]", "http://[::1]:8332/"),
        ("fd00::10", "http://[fd00::10]:8332/"),
        ("10.0.0.5", "http://10.0.0.5:8332/"),
        ("bitcoind.internal", "http://bitcoind.internal:8332/"),
    ])
    def test_node_url(self, host, url):
        """Test that IPv6 literals are bracketed in the node URL."""
        config = ExporterConfig.from_dict(_config(node={"host": host}))

        assert config.node.url == url

    @pytest.mark.parametrize("host", ["node:abc", "node/metrics", "user@node", "::1]", "  "])
    def test_unusable_host(self, host):
        """Test that hosts which cannot form a node URL are rejected at startup."""
        with pytest.raises(ConfigError):
            ExporterConfig.from_dict(_config(node={"host": host}))

    def test_fee_targets_deduplicated(self):
        """Test that repeated fee targets are kept once, in order."""
        config = ExporterConfig.from_dict(_config(collection={"fee_targets": "6, 2, 6, 144"}))

        assert config.collection.fee_targets == (6, 2, 144)

    def test_repr_masks_password(self):
        """Test that the password never appears in the config repr."""
        config = ExporterConfig.from_dict(_config())

        assert "secret" not in repr(config)
        assert "***" in repr(config)


class TestFromEnv:
    """Test suite for ExporterConfig.from_env."""

    def test_reads_environment(self):
        """Test building config from environment variables."""
        config = ExporterConfig.from_env({
            "BTC_NODE_HOST": "node.local",
            "BTC_NODE_PORT": "18332",
            "BTC_NODE_RPC_USER": "bitcoin",
            "BTC_NODE_RPC_PASSWORD": "secret",
            "BTC_NODE_TIMEOUT_MS": "2500",
            "SERVER_PORT": "9400",
            "SERVER_RENDER_TIMESTAMPS": "true",
            "SERVER_SELF_METRICS": "no",
            "COLLECTION_INTERVAL_SECONDS": "30",
            "COLLECTION_RETRIES": "0",
            "COLLECTION_FEE_TARGETS": "3,1008",
            "LOG_LEVEL": "debug",
        })

        assert config.node.url == "http://node.local:18332/"
        assert config.node.timeout_seconds == 2.5
        assert config.server.port == 9400
        assert config.server.render_timestamps is True
        assert config.server.self_metrics is False
        assert config.collection.interval_seconds == 30
        assert config.collection.retries == 0
        assert config.collection.fee_targets == (3, 1008)
        assert config.log_level == "DEBUG"

    def test_cookie_file_from_environment(self):
        config = ExporterConfig.from_env({"BTC_NODE_COOKIE_FILE": "/data/.cookie"})

        assert config.node.auth.cookie_file == "/data/.cookie"

    def test_missing_auth(self):
        """Test that an environment without credentials is a config error."""
        with pytest.raises(ConfigError):
            ExporterConfig.from_env({})

    def test_loads_env_file(self, tmp_path, monkeypatch):
        """Test that the .env file named by BTC_EXPORTER_ENV_FILE is loaded."""
        env_file = tmp_path / "exporter.env"
        env_file.write_text(
            "BTC_NODE_RPC_USER=fromfile\n"
            "BTC_NODE_RPC_PASSWORD=filesecret\n"
            "SERVER_PORT=9555\n"
        )
        # setenv then delenv so teardown also removes what load_dotenv adds
        for name in ("BTC_NODE_RPC_USER", "BTC_NODE_RPC_PASSWORD", "BTC_NODE_COOKIE_FILE", "SERVER_PORT"):
            monkeypatch.setenv(name, "unset")
            monkeypatch.delenv(name)
        monkeypatch.setenv("BTC_EXPORTER_ENV_FILE", str(env_file))

        config = ExporterConfig.from_env()

        assert config.node.auth.user == "fromfile"
        assert config.server.port == 9555
