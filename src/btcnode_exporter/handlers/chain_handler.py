#!/usr/bin/env python3
"""
Chain Response Handlers

Maps chain-related RPC results to metric values:
- getblockchaininfo: height, headers, difficulty, sync progress, disk size
- getmininginfo: network hash rate, pooled transactions
- getchaintxstats: transaction totals and rate over the stats window
- getchaintips: known tips, total and by status
- getblockstats: statistics for the block at the current height
"""

import logging
from typing import Any, Dict

from btcnode_exporter.clients.errors import ParseError
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


CHAIN_TIP_STATUSES = ("active", "valid-fork", "valid-headers", "headers-only", "invalid")

# getblockstats reports feerate_percentiles at these points, in this order
FEE_RATE_PERCENTILES = ("10", "25", "50", "75", "90")

# getblockstats field -> metric name
BLOCK_STATS_FIELDS = {
    "txs": "btc_latest_block_transactions",
    "total_size": "btc_latest_block_size_bytes",
    "total_weight": "btc_latest_block_weight",
    "ins": "btc_latest_block_inputs",
    "outs": "btc_latest_block_outputs",
    "swtxs": "btc_latest_block_segwit_transactions",
    "swtotal_size": "btc_latest_block_segwit_size_bytes",
    "swtotal_weight": "btc_latest_block_segwit_weight",
    "avgfee": "btc_latest_block_avg_fee_sat",
    "medianfee": "btc_latest_block_median_fee_sat",
    "minfee": "btc_latest_block_min_fee_sat",
    "maxfee": "btc_latest_block_max_fee_sat",
    "totalfee": "btc_latest_block_total_fee_sat",
    "avgfeerate": "btc_latest_block_avg_fee_rate_sat_per_vb",
    "minfeerate": "btc_latest_block_min_fee_rate_sat_per_vb",
    "maxfeerate": "btc_latest_block_max_fee_rate_sat_per_vb",
    "subsidy": "btc_latest_block_subsidy_sat",
    "total_out": "btc_latest_block_total_out_sat",
    "utxo_increase": "btc_latest_block_utxo_increase",
}


def map_blockchain_info(result: Any) -> Dict[SeriesKey, float]:
    """Map getblockchaininfo"""
    info = require_mapping(result, "getblockchaininfo")

    blocks = number(info, "blocks")
    headers = number(info, "headers")

    values = {
        series("btc_block_height"): blocks,
        series("btc_header_height"): headers,
        series("btc_difficulty"): number(info, "difficulty"),
        series("btc_verification_progress"): number(info, "verificationprogress"),
        series("btc_size_on_disk_bytes"): number(info, "size_on_disk"),
        series("btc_initial_block_download"): flag(info, "initialblockdownload"),
        series("btc_chain_pruned"): flag(info, "pruned"),
        series("btc_median_time_seconds"): number(info, "mediantime"),
    }

    logger.debug(f"blockchain: blocks={blocks:.0f}, headers={headers:.0f}")
    return values


def block_height(result: Any) -> int:
    """Current height from a getblockchaininfo result (params for getblockstats)"""
    info = require_mapping(result, "getblockchaininfo")
    return int(number(info, "blocks"))


def map_mining_info(result: Any) -> Dict[SeriesKey, float]:
    """Map getmininginfo"""
    info = require_mapping(result, "getmininginfo")

    # networkhashps is a float on mainnet (e.g. 6.5e+20)
    return {
        series("btc_network_hash_per_second"): number(info, "networkhashps"),
        series("btc_mining_pooled_transactions"): number(info, "pooledtx"),
    }


def map_chain_tx_stats(result: Any) -> Dict[SeriesKey, float]:
    """Map getchaintxstats; window fields are absent when the window is empty"""
    stats = require_mapping(result, "getchaintxstats")

    return {
        series("btc_chain_transactions_total"): number(stats, "txcount"),
        series("btc_chain_tx_rate_per_second"): optional_number(stats, "txrate"),
        series("btc_chain_tx_window_blocks"): number(stats, "window_block_count"),
        series("btc_chain_tx_window_transactions"): optional_number(stats, "window_tx_count"),
        series("btc_chain_tx_window_interval_seconds"): optional_number(stats, "window_interval"),
    }


def map_chain_tips(result: Any) -> Dict[SeriesKey, float]:
    """Map getchaintips to a total count plus a count per tip status"""
    tips = require_list(result, "getchaintips")

    by_status = {status: 0 for status in CHAIN_TIP_STATUSES}
    for tip in tips:
        tip = require_mapping(tip, "getchaintips entry")
        status = tip.get("status")
        if status not in by_status:
            raise ParseError(f"getchaintips: unknown tip status {status!r}")
        by_status[status] += 1

    values = {series("btc_chain_tips_count"): float(len(tips))}
    for status, count in by_status.items():
        values[series("btc_chain_tips", status)] = float(count)

    return values


def map_block_stats(result: Any) -> Dict[SeriesKey, float]:
    """Map getblockstats for the latest block"""
    stats = require_mapping(result, "getblockstats")

    values = {
        series(metric): number(stats, field)
        for field, metric in BLOCK_STATS_FIELDS.items()
    }

    percentiles = require_list(stats.get("feerate_percentiles"), "getblockstats feerate_percentiles")
    if len(percentiles) != len(FEE_RATE_PERCENTILES):
        raise ParseError(
            f"getblockstats: expected {len(FEE_RATE_PERCENTILES)} feerate percentiles, "
            f"got {len(percentiles)}"
        )

    for label, raw in zip(FEE_RATE_PERCENTILES, percentiles):
        values[series("btc_latest_block_fee_rate_sat_per_vb", label)] = as_number(raw, f"feerate_percentiles[{label}]")

    return values
