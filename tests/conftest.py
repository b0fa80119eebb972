"""Shared pytest configuration and fixtures."""

import copy
import json

import httpx
import pytest

from btcnode_exporter.clients.bitcoin_rpc_client import BitcoinRPCClient
from btcnode_exporter.monitor.catalog import build_catalog
from btcnode_exporter.monitor.collector import MetricCollector
from btcnode_exporter.monitor.config import ExporterConfig, NodeAuth, NodeConfig


# Canned bitcoind replies (mainnet-like values)
BLOCKCHAIN_INFO = {
    "chain": "main",
    "blocks": 800000,
    "headers": 800002,
    "bestblockhash": "00000000000000000002a7c4c1e48d76c5a37902165a270156b7a8d72728a054",
    "difficulty": 53911173001054.59,
    "mediantime": 1690168629,
    "verificationprogress": 0.9999987,
    "initialblockdownload": False,
    "size_on_disk": 569000000000,
    "pruned": False,
}

MEMPOOL_INFO = {
    "loaded": True,
    "size": 4500,
    "bytes": 2100000,
    "usage": 9800000,
    "total_fee": 0.35,
    "maxmempool": 300000000,
    "mempoolminfee": 0.00001,
    "minrelaytxfee": 0.00001,
    "incrementalrelayfee": 0.00001,
    "unbroadcastcount": 0,
    "fullrbf": False,
}

NETWORK_INFO = {
    "version": 250000,
    "subversion": "/Satoshi:25.0.0/",
    "protocolversion": 70016,
    "timeoffset": 0,
    "networkactive": True,
    "connections": 10,
    "connections_in": 2,
    "connections_out": 8,
    "relayfee": 0.00001,
    "incrementalfee": 0.00001,
}

PEER_INFO = [
    {"id": 0, "inbound": False, "bytessent": 1000, "bytesrecv": 5000, "pingtime": 0.05},
    {"id": 1, "inbound": True, "bytessent": 200, "bytesrecv": 300, "pingtime": 0.15},
    {"id": 2, "inbound": False, "bytessent": 0, "bytesrecv": 0},
]

MINING_INFO = {
    "blocks": 800000,
    "difficulty": 53911173001054.59,
    "networkhashps": 4.2e20,
    "pooledtx": 4500,
    "chain": "main",
}

CHAIN_TX_STATS = {
    "time": 1690168629,
    "txcount": 870000000,
    "window_final_block_height": 800000,
    "window_block_count": 4320,
    "window_tx_count": 1500000,
    "window_interval": 2592000,
    "txrate": 0.58,
}

NET_TOTALS = {
    "totalbytesrecv": 123456789,
    "totalbytessent": 98765432,
    "timemillis": 1690168629000,
}

FEE_ESTIMATES = {2: 0.0002, 6: 0.00015, 12: 0.0001, 144: 0.00002}

CHAIN_TIPS = [
    {"height": 800000, "branchlen": 0, "status": "active"},
    {"height": 799500, "branchlen": 1, "status": "valid-fork"},
    {"height": 790000, "branchlen": 1, "status": "valid-fork"},
    {"height": 800002, "branchlen": 2, "status": "headers-only"},
]

UPTIME = 86400

BLOCK_STATS = {
    "txs": 3000,
    "total_size": 1500000,
    "total_weight": 3993000,
    "ins": 7000,
    "outs": 8000,
    "swtxs": 2800,
    "swtotal_size": 1400000,
    "swtotal_weight": 3700000,
    "avgfee": 5000,
    "medianfee": 3000,
    "minfee": 200,
    "maxfee": 1500000,
    "totalfee": 15000000,
    "avgfeerate": 20,
    "minfeerate": 1,
    "maxfeerate": 500,
    "subsidy": 625000000,
    "total_out": 150000000000,
    "utxo_increase": 1000,
    "feerate_percentiles": [5, 10, 15, 25, 50],
}

CANNED_RESULTS = {
    "getblockchaininfo": BLOCKCHAIN_INFO,
    "getmempoolinfo": MEMPOOL_INFO,
    "getnetworkinfo": NETWORK_INFO,
    "getpeerinfo": PEER_INFO,
    "getmininginfo": MINING_INFO,
    "getchaintxstats": CHAIN_TX_STATS,
    "getnettotals": NET_TOTALS,
    "getchaintips": CHAIN_TIPS,
    "uptime": UPTIME,
}


class FakeNode:
    """
    In-process bitcoind stand-in for httpx.MockTransport

    Methods answer with the canned results above unless a failure has
    been registered for them with fail().
    """

    def __init__(self):
        self.results = copy.deepcopy(CANNED_RESULTS)
        self.failures = {}
        self.calls = []
        self.authorizations = []

    def fail(self, method, responder):
        """Make `method` answer with responder(request) (a Response, or raise)"""
        self.failures[method] = responder

    def fail_status(self, method, status, body=None):
        if body is None:
            self.fail(method, lambda request: httpx.Response(status, text=""))
        else:
            self.fail(method, lambda request: httpx.Response(status, json=body))

    def fail_connect(self, method):
        def responder(request):
            raise httpx.ConnectError("Connection refused", request=request)
        self.fail(method, responder)

    def recover(self, method):
        self.failures.pop(method, None)

    def methods_called(self):
        return [method for method, _ in self.calls]

    def handler(self, request):
        payload = json.loads(request.content)
        method = payload["method"]
        params = payload["params"]

        self.calls.append((method, params))
        self.authorizations.append(request.headers.get("authorization"))

        responder = self.failures.get(method) or self.failures.get("*")
        if responder is not None:
            return responder(request)

        if method == "estimatesmartfee":
            result = {"feerate": FEE_ESTIMATES[params[0]], "blocks": params[0]}
        elif method == "getblockstats":
            result = dict(BLOCK_STATS, height=params[0])
        else:
            result = self.results[method]

        return httpx.Response(200, json={"result": result, "error": None, "id": payload["id"]})

    @property
    def transport(self):
        return httpx.MockTransport(self.handler)


@pytest.fixture
def fake_node():
    """Fake bitcoind answering every catalog method."""
    return FakeNode()


@pytest.fixture
def node_config():
    return NodeConfig(
        host="127.0.0.1",
        port=8332,
        auth=NodeAuth(user="bitcoin", password="secret"),
        timeout_ms=1000,
    )


@pytest.fixture
def exporter_config():
    """Minimal valid configuration."""
    return ExporterConfig.from_dict({
        "node": {"auth": {"user": "bitcoin", "password": "secret"}},
    })


@pytest.fixture
def catalog():
    return build_catalog()


@pytest.fixture
def rpc_client(node_config, fake_node):
    return BitcoinRPCClient(node_config, transport=fake_node.transport)


@pytest.fixture
def collector(catalog, rpc_client):
    """Collector with no delay between retries."""
    return MetricCollector(catalog, rpc_client, retries=1, retry_delay=0)
