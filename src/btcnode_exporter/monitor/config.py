#!/usr/bin/env python3
"""
Exporter Configuration

Structured configuration for the exporter. Built either from a nested
mapping (node / server / collection sections) or from environment
variables, optionally loaded from a .env file.
"""

import ipaddress
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

import httpx
from dotenv import load_dotenv

from btcnode_exporter.clients.errors import ConfigError


logger = logging.getLogger(__name__)


DEFAULT_FEE_TARGETS = (2, 6, 12, 144)

# estimatesmartfee rejects targets outside this range
MIN_FEE_TARGET = 1
MAX_FEE_TARGET = 1008

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

_TRUE_VALUES = ("1", "true", "yes", "on")
_FALSE_VALUES = ("0", "false", "no", "off")


@dataclass(frozen=True)
class NodeAuth:
    """RPC credentials: either user/password or a cookie file path"""
    user: Optional[str] = None
    password: Optional[str] = None
    cookie_file: Optional[str] = None

    @property
    def uses_cookie(self) -> bool:
        return self.cookie_file is not None

    def __repr__(self) -> str:
        if self.uses_cookie:
            return f"NodeAuth(cookie_file={self.cookie_file})"
        return f"NodeAuth(user={self.user}, password=***)"


@dataclass(frozen=True)
class NodeConfig:
    host: str = "127.0.0.1"
    port: int = 8332
    auth: NodeAuth = field(default_factory=NodeAuth)
    timeout_ms: int = 5000
    scheme: str = "http"

    @property
    def url(self) -> str:
        return f"{self.scheme}://{_url_host(self.host)}:{self.port}/"

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_ms / 1000.0


@dataclass(frozen=True)
class ServerConfig:
    bind_address: str = "0.0.0.0"
    port: int = 9332
    render_timestamps: bool = False
    self_metrics: bool = True


@dataclass(frozen=True)
class CollectionConfig:
    interval_seconds: float = 15.0
    retries: int = 1
    fee_targets: Tuple[int, ...] = DEFAULT_FEE_TARGETS


@dataclass(frozen=True)
class ExporterConfig:
    """Complete exporter configuration"""
    node: NodeConfig
    server: ServerConfig = field(default_factory=ServerConfig)
    collection: CollectionConfig = field(default_factory=CollectionConfig)
    log_level: str = "INFO"

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ExporterConfig":
        """
        Build and validate a config from a nested mapping

        Expected layout:
            {
                "node": {"host": ..., "port": ..., "timeout_ms": ...,
                         "auth": {"user": ..., "password": ...} or {"cookie_file": ...}},
                "server": {"bind_address": ..., "port": ...},
                "collection": {"interval_seconds": ...},
                "log_level": "INFO"
            }

        Raises:
            ConfigError: If any option is missing, malformed, or out of range
        """
        node_data = _section(data, "node")
        server_data = _section(data, "server")
        collection_data = _section(data, "collection")

        auth = _parse_auth(node_data.get("auth"))

        scheme = str(node_data.get("scheme", "http")).lower()
        if scheme not in ("http", "https"):
            raise ConfigError(f"node.scheme must be http or https, got {scheme!r}")

        host = str(node_data.get("host", "127.0.0.1")).strip()
        if not host:
            raise ConfigError("node.host must not be empty")

        node = NodeConfig(
            host=host,
            port=_port(node_data.get("port", 8332), "node.port"),
            auth=auth,
            timeout_ms=_positive_int(node_data.get("timeout_ms", 5000), "node.timeout_ms"),
            scheme=scheme,
        )
        _check_node_url(node)

        server = ServerConfig(
            bind_address=str(server_data.get("bind_address", "0.0.0.0")),
            port=_port(server_data.get("port", 9332), "server.port"),
            render_timestamps=_bool(server_data.get("render_timestamps", False), "server.render_timestamps"),
            self_metrics=_bool(server_data.get("self_metrics", True), "server.self_metrics"),
        )

        interval = _number(collection_data.get("interval_seconds", 15), "collection.interval_seconds")
        if not 0 < interval < float("inf"):
            raise ConfigError(f"collection.interval_seconds must be positive, got {interval}")

        retries = _int(collection_data.get("retries", 1), "collection.retries")
        if retries < 0:
            raise ConfigError(f"collection.retries must not be negative, got {retries}")

        collection = CollectionConfig(
            interval_seconds=interval,
            retries=retries,
            fee_targets=_fee_targets(collection_data.get("fee_targets", DEFAULT_FEE_TARGETS)),
        )

        log_level = str(data.get("log_level", "INFO")).upper()
        if log_level not in LOG_LEVELS:
            raise ConfigError(f"log_level must be one of {', '.join(LOG_LEVELS)}, got {log_level!r}")

        return cls(node=node, server=server, collection=collection, log_level=log_level)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "ExporterConfig":
        """
        Build a config from environment variables

        When environ is None, a .env file (BTC_EXPORTER_ENV_FILE, default
        ./.env) is loaded into os.environ first if it exists.
        """
        if environ is None:
            env_path = Path(os.getenv("BTC_EXPORTER_ENV_FILE", ".env"))
            if env_path.exists():
                load_dotenv(env_path)
                logger.info(f"Loaded environment from {env_path}")
            environ = os.environ

        auth: Dict[str, Any] = {}
        if environ.get("BTC_NODE_COOKIE_FILE"):
            auth["cookie_file"] = environ["BTC_NODE_COOKIE_FILE"]
        if environ.get("BTC_NODE_RPC_USER") is not None:
            auth["user"] = environ["BTC_NODE_RPC_USER"]
        if environ.get("BTC_NODE_RPC_PASSWORD") is not None:
            auth["password"] = environ["BTC_NODE_RPC_PASSWORD"]

        data = {
            "node": {
                "scheme": environ.get("BTC_NODE_SCHEME", "http"),
                "host": environ.get("BTC_NODE_HOST", "127.0.0.1"),
                "port": environ.get("BTC_NODE_PORT", "8332"),
                "timeout_ms": environ.get("BTC_NODE_TIMEOUT_MS", "5000"),
                "auth": auth,
            },
            "server": {
                "bind_address": environ.get("SERVER_BIND_ADDRESS", "0.0.0.0"),
                "port": environ.get("SERVER_PORT", "9332"),
                "render_timestamps": environ.get("SERVER_RENDER_TIMESTAMPS", "false"),
                "self_metrics": environ.get("SERVER_SELF_METRICS", "true"),
            },
            "collection": {
                "interval_seconds": environ.get("COLLECTION_INTERVAL_SECONDS", "15"),
                "retries": environ.get("COLLECTION_RETRIES", "1"),
                "fee_targets": environ.get("COLLECTION_FEE_TARGETS", "2,6,12,144"),
            },
            "log_level": environ.get("LOG_LEVEL", "INFO"),
        }
        return cls.from_dict(data)

    def __repr__(self) -> str:
        return (
            f"ExporterConfig(\n"
            f"  node={self.node.url}\n"
            f"  auth={self.node.auth!r}\n"
            f"  timeout={self.node.timeout_ms}ms\n"
            f"  listen={self.server.bind_address}:{self.server.port}\n"
            f"  interval={self.collection.interval_seconds}s\n"
            f"  retries={self.collection.retries}\n"
            f"  fee_targets={list(self.collection.fee_targets)}\n"
            f"  log_level={self.log_level}\n"
            f")"
        )


def _section(data: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    section = data.get(name) or {}
    if not isinstance(section, Mapping):
        raise ConfigError(f"'{name}' section must be a mapping, got {type(section).__name__}")
    return section


def _parse_auth(raw: Any) -> NodeAuth:
    if not raw:
        raise ConfigError("node.auth is required: set user/password or cookie_file")
    if not isinstance(raw, Mapping):
        raise ConfigError("node.auth must be a mapping")

    cookie_file = raw.get("cookie_file")
    user = raw.get("user")
    password = raw.get("password")

    if cookie_file and (user or password):
        raise ConfigError("node.auth: use either user/password or cookie_file, not both")

    if cookie_file:
        return NodeAuth(cookie_file=str(cookie_file))

    if not user or password is None:
        raise ConfigError("node.auth: both user and password are required")

    return NodeAuth(user=str(user), password=str(password))


def _int(value: Any, name: str) -> int:
    if isinstance(value, bool):
        raise ConfigError(f"{name} must be an integer, got {value!r}")
    try:
        return int(str(value).strip())
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {value!r}") from None


def _positive_int(value: Any, name: str) -> int:
    result = _int(value, name)
    if result <= 0:
        raise ConfigError(f"{name} must be positive, got {result}")
    return result


def _port(value: Any, name: str) -> int:
    port = _int(value, name)
    if not 1 <= port <= 65535:
        raise ConfigError(f"{name} must be between 1 and 65535, got {port}")
    return port


def _number(value: Any, name: str) -> float:
    if isinstance(value, bool):
        raise ConfigError(f"{name} must be a number, got {value!r}")
    try:
        return float(str(value).strip())
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {value!r}") from None


def _bool(value: Any, name: str) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE_VALUES:
        return True
    if text in _FALSE_VALUES:
        return False
    raise ConfigError(f"{name} must be a boolean, got {value!r}")


def _fee_targets(value: Any) -> Tuple[int, ...]:
    if isinstance(value, str):
        items = [item.strip() for item in value.split(",") if item.strip()]
    else:
        items = list(value)

    targets = []
    for item in items:
        target = _int(item, "collection.fee_targets")
        if not MIN_FEE_TARGET <= target <= MAX_FEE_TARGET:
            raise ConfigError(
                f"collection.fee_targets entries must be between {MIN_FEE_TARGET} "
                f"and {MAX_FEE_TARGET}, got {target}"
            )
        if target not in targets:
            targets.append(target)

    return tuple(targets)


def _url_host(host: str) -> str:
    # IPv6 literals need brackets inside a URL
    try:
        address = ipaddress.ip_address(host)
    except ValueError:
        return host
    if address.version == 6:
        return f"[{host}]"
    return host


def _check_node_url(node: NodeConfig) -> None:
    try:
        parsed = httpx.URL(node.url)
    except httpx.InvalidURL as e:
        raise ConfigError(f"node.host {node.host!r} does not form a valid URL: {e}") from e
    if parsed.host.lower() != node.host.strip("[]").lower():
        raise ConfigError(f"node.host {node.host!r} does not form a valid URL: {node.url}")
