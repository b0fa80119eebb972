#!/usr/bin/env python3
"""
Bitcoin Node JSON-RPC Client

Async adapter for querying a Bitcoin full node over its JSON-RPC HTTP
interface. Each query opens its own httpx client, enforces a hard
deadline, and classifies any failure as a CollectionError instead of
raising into the collection cycle.
"""

import asyncio
import itertools
import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Optional, Sequence, Union

import httpx

from btcnode_exporter.clients.errors import (
    AuthError,
    CollectionError,
    NodeConnectionError,
    ParseError,
    RpcProtocolError,
)

if TYPE_CHECKING:
    from btcnode_exporter.monitor.catalog import MetricGroup
    from btcnode_exporter.monitor.config import NodeConfig
    from btcnode_exporter.monitor.self_metrics import SelfMetrics


logger = logging.getLogger(__name__)


# bitcoind answers 503 when its RPC work queue is full
HTTP_WORK_QUEUE_FULL = 503


@dataclass(frozen=True)
class NodeQueryResult:
    """
    Raw result of one successful RPC call

    Attributes:
        group: Metric group the call was made for
        method: RPC method
        result: JSON 'result' member, unmodified
        timestamp: Completion time (unix seconds)
        duration: Call duration in seconds
    """
    group: str
    method: str
    result: Any
    timestamp: float
    duration: float


class BitcoinRPCClient:
    """
    JSON-RPC adapter for bitcoind

    Features:
    - One httpx.AsyncClient per call, closed on every exit path
    - Hard per-call deadline (node.timeout_ms)
    - user/password or cookie-file authentication (cookie re-read per call)
    - Error classification: transient network, auth, RPC error, parse error
    - No internal retries (the collector owns retry policy)

    Usage:
        client = BitcoinRPCClient(config.node)
        outcome = await client.query(catalog.group("blockchain"))
        if isinstance(outcome, CollectionError):
            ...
    """

    def __init__(
        self,
        node_config: "NodeConfig",
        transport: Optional[httpx.AsyncBaseTransport] = None,
        self_metrics: Optional["SelfMetrics"] = None
    ):
        """
        Initialize RPC client

        Args:
            node_config: Node connection settings
            transport: Optional httpx transport (tests inject httpx.MockTransport)
            self_metrics: Optional exporter self-instrumentation
        """
        self.url = node_config.url
        self.timeout = node_config.timeout_seconds
        self.auth_config = node_config.auth
        self._transport = transport
        self._self_metrics = self_metrics
        self._request_ids = itertools.count(1)

        logger.info(f"Bitcoin RPC client initialized: {self.url} (timeout={self.timeout}s)")

    async def query(
        self,
        group: "MetricGroup",
        params: Optional[Sequence[Any]] = None
    ) -> Union[NodeQueryResult, CollectionError]:
        """
        Run the RPC call behind a metric group

        Args:
            group: Metric group (name, method and default params)
            params: Params overriding group.params (e.g. a block height)

        Returns:
            NodeQueryResult on success, or the CollectionError describing the failure
        """
        call_params = group.params if params is None else tuple(params)
        start = time.monotonic()

        try:
            result = await self.call(group.method, call_params)
        except CollectionError as e:
            e.group = group.name
            self._record(group.method, e.kind.value)
            return e

        self._record(group.method, "success")

        return NodeQueryResult(
            group=group.name,
            method=group.method,
            result=result,
            timestamp=time.time(),
            duration=time.monotonic() - start,
        )

    async def call(self, method: str, params: Sequence[Any] = ()) -> Any:
        """
        Call an RPC method and return its 'result'

        Raises:
            NodeConnectionError: Timeout, refused/reset connection, work queue full
            AuthError: Credentials rejected or cookie file unreadable
            RpcProtocolError: Node returned an error payload or unexpected status
            ParseError: Response is not a JSON-RPC reply
        """
        auth = await self._resolve_auth()

        payload = {
            "jsonrpc": "1.0",
            "id": f"btcnode-exporter-{next(self._request_ids)}",
            "method": method,
            "params": list(params),
        }

        try:
            response = await asyncio.wait_for(self._post(payload, auth), timeout=self.timeout)
        except asyncio.TimeoutError:
            raise NodeConnectionError(f"{method} timed out after {self.timeout}s") from None
        except httpx.TimeoutException as e:
            raise NodeConnectionError(f"{method} timed out: {e}") from e
        except httpx.DecodingError as e:
            raise ParseError(f"{method} response body could not be decoded: {e}") from e
        except httpx.RequestError as e:
            raise NodeConnectionError(f"{method} connection failed: {e!r}") from e

        return self._parse_response(method, response)

    async def _post(self, payload: dict, auth: httpx.BasicAuth) -> httpx.Response:
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            return await client.post(
                self.url,
                json=payload,
                auth=auth,
                headers={"Content-Type": "application/json"}
            )

    def _parse_response(self, method: str, response: httpx.Response) -> Any:
        status = response.status_code

        if status in (401, 403):
            raise AuthError(f"{method} rejected with HTTP {status} (check rpc credentials)")

        if status == HTTP_WORK_QUEUE_FULL:
            raise NodeConnectionError(f"{method}: node work queue full (HTTP {status})")

        # bitcoind sends error payloads with HTTP 404 (unknown method) or 500
        try:
            body = response.json()
        except ValueError:
            if status != 200:
                raise RpcProtocolError(f"{method} failed with HTTP {status}") from None
            raise ParseError(f"{method} returned a non-JSON body: {response.text[:200]!r}") from None

        if not isinstance(body, dict):
            raise ParseError(f"{method} returned {type(body).__name__}, expected a JSON-RPC object")

        error = body.get("error")
        if error is not None:
            if isinstance(error, dict):
                raise RpcProtocolError(
                    f"{method} error {error.get('code')}: {error.get('message')}",
                    code=error.get("code"),
                )
            raise RpcProtocolError(f"{method} error: {error}")

        if status != 200:
            raise RpcProtocolError(f"{method} failed with HTTP {status}")

        if "result" not in body:
            raise ParseError(f"{method} reply has no 'result' member")

        return body["result"]

    async def _resolve_auth(self) -> httpx.BasicAuth:
        """
        Build basic auth from config

        The node rewrites its cookie file on every restart, so it is read
        on each call. A missing file means the node is down or restarting;
        an unreadable or malformed one is a credentials problem.
        """
        if not self.auth_config.uses_cookie:
            return httpx.BasicAuth(self.auth_config.user, self.auth_config.password)

        path = self.auth_config.cookie_file
        try:
            cookie = (await asyncio.to_thread(_read_cookie, path)).strip()
        except FileNotFoundError:
            raise NodeConnectionError(f"cookie file not found: {path} (node not running?)") from None
        except (OSError, UnicodeDecodeError) as e:
            raise AuthError(f"cannot read cookie file {path}: {e}") from e

        user, sep, password = cookie.partition(":")
        if not sep or not user:
            raise AuthError(f"malformed cookie file: {path}")

        return httpx.BasicAuth(user, password)

    def _record(self, method: str, outcome: str):
        if self._self_metrics is not None:
            self._self_metrics.observe_rpc(method, outcome)

    def __repr__(self) -> str:
        return f"BitcoinRPCClient(url={self.url}, timeout={self.timeout}s)"


def _read_cookie(path: str) -> str:
    with open(path, encoding="utf-8") as f:
        return f.read()
