#!/usr/bin/env python3
"""
Network Response Handlers

Maps network-related RPC results to metric values:
- getnetworkinfo: connection counts, version, relay fees
- getpeerinfo: per-peer list aggregated by direction
- getnettotals: cumulative traffic counters
- uptime: node uptime
"""

import logging
from typing import Any, Dict

from btcnode_exporter.handlers.fields import (
    SeriesKey,
    as_number,
    flag,
    number,
    optional_number,
    require_list,
    require_mapping,
    series,
)


logger = logging.getLogger(__name__)


CONNECTION_DIRECTIONS = ("in", "out", "total")
PEER_DIRECTIONS = ("inbound", "outbound")
TRAFFIC_DIRECTIONS = ("received", "sent")


def map_network_info(result: Any) -> Dict[SeriesKey, float]:
    """Map getnetworkinfo"""
    info = require_mapping(result, "getnetworkinfo")

    return {
        series("btc_connections", "total"): number(info, "connections"),
        # connections_in / connections_out exist since v0.21
        series("btc_connections", "in"): optional_number(info, "connections_in"),
        series("btc_connections", "out"): optional_number(info, "connections_out"),
        series("btc_network_active"): flag(info, "networkactive"),
        series("btc_node_version"): number(info, "version"),
        series("btc_protocol_version"): number(info, "protocolversion"),
        series("btc_time_offset_seconds"): number(info, "timeoffset"),
        series("btc_relay_fee_btc_per_kvb"): number(info, "relayfee"),
        series("btc_incremental_fee_btc_per_kvb"): number(info, "incrementalfee"),
    }


def map_peer_info(result: Any) -> Dict[SeriesKey, float]:
    """Aggregate getpeerinfo: counts by direction, traffic sums, mean ping"""
    peers = require_list(result, "getpeerinfo")

    inbound = 0
    bytes_sent = 0.0
    bytes_received = 0.0
    pings = []

    for peer in peers:
        peer = require_mapping(peer, "getpeerinfo entry")

        if flag(peer, "inbound"):
            inbound += 1

        bytes_sent += number(peer, "bytessent")
        bytes_received += number(peer, "bytesrecv")

        # pingtime is absent until the first pong
        ping = peer.get("pingtime")
        if ping is not None:
            pings.append(number(peer, "pingtime"))

    total = len(peers)
    avg_ping = sum(pings) / len(pings) if pings else 0.0

    logger.debug(f"peers: total={total} (in={inbound}, out={total - inbound})")

    return {
        series("btc_peer_count"): float(total),
        series("btc_peers", "inbound"): float(inbound),
        series("btc_peers", "outbound"): float(total - inbound),
        series("btc_peers_bytes_sent"): bytes_sent,
        series("btc_peers_bytes_received"): bytes_received,
        series("btc_peers_avg_ping_seconds"): avg_ping,
    }


def map_net_totals(result: Any) -> Dict[SeriesKey, float]:
    """Map getnettotals (counters since node start)"""
    totals = require_mapping(result, "getnettotals")

    return {
        series("btc_net_bytes_total", "received"): number(totals, "totalbytesrecv"),
        series("btc_net_bytes_total", "sent"): number(totals, "totalbytessent"),
    }


def map_uptime(result: Any) -> Dict[SeriesKey, float]:
    """Map uptime (a bare number of seconds)"""
    return {
        series("btc_node_uptime_seconds"): as_number(result, "uptime"),
    }
