"""Tests for RPC response mapping rules."""

import math

import pytest

from btcnode_exporter.clients.errors import ErrorKind, ParseError, RpcProtocolError
from btcnode_exporter.handlers import chain_handler, mempool_handler, network_handler
from btcnode_exporter.handlers.fields import series

from conftest import (
    BLOCK_STATS,
    BLOCKCHAIN_INFO,
    CHAIN_TIPS,
    CHAIN_TX_STATS,
    MEMPOOL_INFO,
    NETWORK_INFO,
    PEER_INFO,
)


class TestChainHandler:
    """Test suite for chain handlers."""

    def test_blockchain_info(self):
        """Test getblockchaininfo mapping."""
        values = chain_handler.map_blockchain_info(BLOCKCHAIN_INFO)

        assert values[series("btc_block_height")] == 800000
        assert values[series("btc_header_height")] == 800002
        assert values[series("btc_verification_progress")] == pytest.approx(0.9999987)
        assert values[series("btc_initial_block_download")] == 0
        assert values[series("btc_chain_pruned")] == 0

    def test_blockchain_info_missing_blocks(self):
        """Test that a missing required field is a parse error."""
        info = dict(BLOCKCHAIN_INFO)
        del info["blocks"]

        with pytest.raises(ParseError) as exc_info:
            chain_handler.map_blockchain_info(info)

        assert exc_info.value.kind is ErrorKind.PARSE_ERROR
        assert "blocks" in str(exc_info.value)

    @pytest.mark.parametrize("result", [None, [], "800000", 800000])
    def test_blockchain_info_not_an_object(self, result):
        with pytest.raises(ParseError):
            chain_handler.map_blockchain_info(result)

    def test_boolean_is_not_a_number(self):
        info = dict(BLOCKCHAIN_INFO, blocks=True)

        with pytest.raises(ParseError):
            chain_handler.map_blockchain_info(info)

    def test_block_height(self):
        assert chain_handler.block_height(BLOCKCHAIN_INFO) == 800000

    def test_chain_tx_stats_empty_window(self):
        """Test that window fields absent for an empty window map to NaN."""
        stats = {"time": 1690168629, "txcount": 1000, "window_block_count": 0}

        values = chain_handler.map_chain_tx_stats(stats)

        assert values[series("btc_chain_transactions_total")] == 1000
        assert values[series("btc_chain_tx_window_blocks")] == 0
        assert math.isnan(values[series("btc_chain_tx_rate_per_second")])
        assert math.isnan(values[series("btc_chain_tx_window_transactions")])

    def test_chain_tx_stats(self):
        values = chain_handler.map_chain_tx_stats(CHAIN_TX_STATS)

        assert values[series("btc_chain_tx_rate_per_second")] == pytest.approx(0.58)
        assert values[series("btc_chain_tx_window_interval_seconds")] == 2592000

    def test_chain_tips_by_status(self):
        """Test that tips are counted per status, with zeroes for absent statuses."""
        values = chain_handler.map_chain_tips(CHAIN_TIPS)

        assert values[series("btc_chain_tips_count")] == 4
        assert values[series("btc_chain_tips", "active")] == 1
        assert values[series("btc_chain_tips", "valid-fork")] == 2
        assert values[series("btc_chain_tips", "headers-only")] == 1
        assert values[series("btc_chain_tips", "invalid")] == 0
        assert values[series("btc_chain_tips", "valid-headers")] == 0

    def test_chain_tips_unknown_status(self):
        with pytest.raises(ParseError):
            chain_handler.map_chain_tips([{"height": 1, "status": "mystery"}])

    def test_block_stats(self):
        """Test getblockstats mapping including fee rate percentiles."""
        values = chain_handler.map_block_stats(BLOCK_STATS)

        assert values[series("btc_latest_block_transactions")] == 3000
        assert values[series("btc_latest_block_subsidy_sat")] == 625000000
        assert values[series("btc_latest_block_fee_rate_sat_per_vb", "10")] == 5
        assert values[series("btc_latest_block_fee_rate_sat_per_vb", "90")] == 50
        assert len(values) == len(chain_handler.BLOCK_STATS_FIELDS) + len(chain_handler.FEE_RATE_PERCENTILES)

    def test_block_stats_wrong_percentile_count(self):
        stats = dict(BLOCK_STATS, feerate_percentiles=[1, 2, 3])

        with pytest.raises(ParseError):
            chain_handler.map_block_stats(stats)


class TestMempoolHandler:
    """Test suite for mempool handlers."""

    def test_mempool_info(self):
        values = mempool_handler.map_mempool_info(MEMPOOL_INFO)

        assert values[series("btc_mempool_transactions")] == 4500
        assert values[series("btc_mempool_min_fee_btc_per_kvb")] == pytest.approx(0.00001)
        assert values[series("btc_mempool_full_rbf")] == 0

    def test_mempool_info_older_node(self):
        """Test that fields missing on older nodes map to NaN instead of failing."""
        info = {
            key: MEMPOOL_INFO[key]
            for key in ("size", "bytes", "usage", "maxmempool", "mempoolminfee", "minrelaytxfee")
        }

        values = mempool_handler.map_mempool_info(info)

        assert values[series("btc_mempool_transactions")] == 4500
        assert math.isnan(values[series("btc_mempool_total_fee_btc")])
        assert math.isnan(values[series("btc_mempool_full_rbf")])
        assert math.isnan(values[series("btc_mempool_unbroadcast_transactions")])

    def test_fee_estimate(self):
        values = mempool_handler.map_fee_estimate({"feerate": 0.00015, "blocks": 6}, target=6)

        assert values == {series("btc_fee_estimate_btc_per_kvb", "6"): pytest.approx(0.00015)}

    def test_fee_estimate_insufficient_data(self):
        """Test that an estimate without feerate is reported as an RPC error."""
        result = {"errors": ["Insufficient data or no feerate found"], "blocks": 0}

        with pytest.raises(RpcProtocolError) as exc_info:
            mempool_handler.map_fee_estimate(result, target=2)

        assert "Insufficient data" in exc_info.value.message


class TestNetworkHandler:
    """Test suite for network handlers."""

    def test_network_info(self):
        values = network_handler.map_network_info(NETWORK_INFO)

        assert values[series("btc_connections", "total")] == 10
        assert values[series("btc_connections", "in")] == 2
        assert values[series("btc_connections", "out")] == 8
        assert values[series("btc_network_active")] == 1
        assert values[series("btc_node_version")] == 250000

    def test_network_info_without_direction_counts(self):
        info = dict(NETWORK_INFO)
        del info["connections_in"]
        del info["connections_out"]

        values = network_handler.map_network_info(info)

        assert values[series("btc_connections", "total")] == 10
        assert math.isnan(values[series("btc_connections", "in")])

    def test_peer_info(self):
        """Test aggregation of the peer list."""
        values = network_handler.map_peer_info(PEER_INFO)

        assert values[series("btc_peer_count")] == 3
        assert values[series("btc_peers", "inbound")] == 1
        assert values[series("btc_peers", "outbound")] == 2
        assert values[series("btc_peers_bytes_sent")] == 1200
        assert values[series("btc_peers_bytes_received")] == 5300
        assert values[series("btc_peers_avg_ping_seconds")] == pytest.approx(0.1)

    def test_peer_info_no_peers(self):
        values = network_handler.map_peer_info([])

        assert values[series("btc_peer_count")] == 0
        assert values[series("btc_peers_avg_ping_seconds")] == 0

    def test_net_totals(self):
        values = network_handler.map_net_totals({"totalbytesrecv": 10, "totalbytessent": 20})

        assert values[series("btc_net_bytes_total", "received")] == 10
        assert values[series("btc_net_bytes_total", "sent")] == 20

    def test_uptime(self):
        assert network_handler.map_uptime(86400) == {series("btc_node_uptime_seconds"): 86400.0}

    def test_uptime_not_a_number(self):
        with pytest.raises(ParseError):
            network_handler.map_uptime({"uptime": 5})
