#!/usr/bin/env python3
"""
Mempool Response Handlers

Maps getmempoolinfo and estimatesmartfee results to metric values.
Fee rates are reported by the node in BTC/kvB and exported unchanged.
"""

import logging
from typing import Any, Dict

from btcnode_exporter.clients.errors import RpcProtocolError
from btcnode_exporter.handlers.fields import (
    SeriesKey,
    flag,
    number,
    optional_number,
    require_mapping,
    series,
)


logger = logging.getLogger(__name__)


def map_mempool_info(result: Any) -> Dict[SeriesKey, float]:
    """
    Map getmempoolinfo

    total_fee, incrementalrelayfee, unbroadcastcount and fullrbf are only
    reported by newer node versions and map to NaN when absent.
    """
    info = require_mapping(result, "getmempoolinfo")

    size = number(info, "size")

    values = {
        series("btc_mempool_transactions"): size,
        series("btc_mempool_bytes"): number(info, "bytes"),
        series("btc_mempool_usage_bytes"): number(info, "usage"),
        series("btc_mempool_max_bytes"): number(info, "maxmempool"),
        series("btc_mempool_min_fee_btc_per_kvb"): number(info, "mempoolminfee"),
        series("btc_mempool_min_relay_fee_btc_per_kvb"): number(info, "minrelaytxfee"),
        series("btc_mempool_incremental_relay_fee_btc_per_kvb"): optional_number(info, "incrementalrelayfee"),
        series("btc_mempool_total_fee_btc"): optional_number(info, "total_fee"),
        series("btc_mempool_unbroadcast_transactions"): optional_number(info, "unbroadcastcount"),
        series("btc_mempool_full_rbf"): flag(info, "fullrbf", required=False),
    }

    logger.debug(f"mempool: txs={size:.0f}")
    return values


def map_fee_estimate(result: Any, target: int) -> Dict[SeriesKey, float]:
    """
    Map estimatesmartfee for one confirmation target

    The node answers with an 'errors' list and no 'feerate' when it has not
    seen enough blocks to estimate; that is reported as an RPC error so the
    previous estimate is kept (stale) instead of exporting a fake value.
    """
    estimate = require_mapping(result, "estimatesmartfee")

    if estimate.get("feerate") is None:
        errors = estimate.get("errors") or ["no feerate in response"]
        raise RpcProtocolError(f"estimatesmartfee({target}): {'; '.join(str(e) for e in errors)}")

    return {
        series("btc_fee_estimate_btc_per_kvb", str(target)): number(estimate, "feerate"),
    }
