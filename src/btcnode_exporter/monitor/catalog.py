#!/usr/bin/env python3
"""
Metric Catalog

Fixed, typed definition of every series the exporter publishes:

- MetricDescriptor: name, kind, label schema, help text
- MetricGroup: one node RPC call and the series its result maps to
- MetricCatalog: descriptors + groups + exporter-health series

The catalog is built once at startup (fee estimate targets come from
config) and never mutated.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from functools import partial
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from btcnode_exporter.clients.errors import ErrorKind
from btcnode_exporter.handlers import chain_handler, mempool_handler, network_handler
from btcnode_exporter.handlers.fields import SeriesKey, series


logger = logging.getLogger(__name__)


HEALTH_GROUP = "exporter"


class MetricKind(str, Enum):
    COUNTER = "counter"
    GAUGE = "gauge"


@dataclass(frozen=True)
class MetricDescriptor:
    """Immutable definition of one metric family"""
    name: str
    kind: MetricKind
    help: str
    labels: Tuple[str, ...] = ()


@dataclass(frozen=True)
class MetricGroup:
    """
    One node query and the series it produces

    Attributes:
        name: Group identifier (used in logs and health labels)
        method: Node RPC method
        params: Default RPC params
        mapper: Maps the raw result to a value per series
        series: Every series the mapper must produce
        depends_on: Group whose fresh result this cycle supplies the params
        params_from: Builds params from the depends_on group's result
    """
    name: str
    method: str
    mapper: Callable[[Any], Dict[SeriesKey, float]] = field(compare=False)
    series: Tuple[SeriesKey, ...]
    params: Tuple[Any, ...] = ()
    depends_on: Optional[str] = None
    params_from: Optional[Callable[[Any], Tuple[Any, ...]]] = field(default=None, compare=False)


def _gauge(name: str, help_text: str, *labels: str) -> MetricDescriptor:
    return MetricDescriptor(name, MetricKind.GAUGE, help_text, tuple(labels))


def _counter(name: str, help_text: str, *labels: str) -> MetricDescriptor:
    return MetricDescriptor(name, MetricKind.COUNTER, help_text, tuple(labels))


NODE_DESCRIPTORS = [
    # Blockchain info
    _gauge("btc_block_height", "Current block height"),
    _gauge("btc_header_height", "Current number of validated headers"),
    _gauge("btc_difficulty", "Current proof-of-work difficulty"),
    _gauge("btc_verification_progress", "Estimate of chain verification progress [0..1]"),
    _gauge("btc_size_on_disk_bytes", "Estimated size of the block and undo files on disk"),
    _gauge("btc_initial_block_download", "Whether the node is in initial block download (1=true, 0=false)"),
    _gauge("btc_chain_pruned", "Whether the blockchain is pruned (1=true, 0=false)"),
    _gauge("btc_median_time_seconds", "Median time of the last 11 blocks (unix seconds)"),

    # Mempool info
    _gauge("btc_mempool_transactions", "Current number of transactions in the mempool"),
    _gauge("btc_mempool_bytes", "Sum of all virtual transaction sizes in the mempool"),
    _gauge("btc_mempool_usage_bytes", "Total memory usage of the mempool"),
    _gauge("btc_mempool_max_bytes", "Maximum memory usage of the mempool"),
    _gauge("btc_mempool_min_fee_btc_per_kvb", "Minimum fee rate for a transaction to be accepted in BTC/kvB"),
    _gauge("btc_mempool_min_relay_fee_btc_per_kvb", "Minimum relay transaction fee in BTC/kvB"),
    _gauge("btc_mempool_incremental_relay_fee_btc_per_kvb", "Minimum fee rate increment for mempool limiting or replacement in BTC/kvB"),
    _gauge("btc_mempool_total_fee_btc", "Total fees of all transactions in the mempool in BTC"),
    _gauge("btc_mempool_unbroadcast_transactions", "Number of mempool transactions not yet broadcast"),
    _gauge("btc_mempool_full_rbf", "Whether full replace-by-fee is enabled (1=true, 0=false)"),

    # Network info
    _gauge("btc_connections", "Number of peer connections", "direction"),
    _gauge("btc_network_active", "Whether p2p networking is active (1=true, 0=false)"),
    _gauge("btc_node_version", "Node software version as an integer"),
    _gauge("btc_protocol_version", "P2P protocol version"),
    _gauge("btc_time_offset_seconds", "Time offset from the network median in seconds"),
    _gauge("btc_relay_fee_btc_per_kvb", "Minimum relay fee for transactions in BTC/kvB"),
    _gauge("btc_incremental_fee_btc_per_kvb", "Minimum fee increment for mempool limiting in BTC/kvB"),

    # Peer info (aggregated)
    _gauge("btc_peer_count", "Number of connected peers"),
    _gauge("btc_peers", "Number of connected peers by direction", "direction"),
    _gauge("btc_peers_bytes_sent", "Bytes sent to currently connected peers"),
    _gauge("btc_peers_bytes_received", "Bytes received from currently connected peers"),
    _gauge("btc_peers_avg_ping_seconds", "Average ping time across connected peers in seconds"),

    # Mining info
    _gauge("btc_network_hash_per_second", "Estimated network hashes per second"),
    _gauge("btc_mining_pooled_transactions", "Number of transactions in the mining pool"),

    # Chain tx stats
    _counter("btc_chain_transactions_total", "Total number of transactions in the chain"),
    _gauge("btc_chain_tx_rate_per_second", "Average transaction rate over the stats window"),
    _gauge("btc_chain_tx_window_blocks", "Number of blocks in the stats window"),
    _gauge("btc_chain_tx_window_transactions", "Number of transactions in the stats window"),
    _gauge("btc_chain_tx_window_interval_seconds", "Elapsed time of the stats window in seconds"),

    # Net totals
    _counter("btc_net_bytes_total", "Total network traffic since node start in bytes", "direction"),

    # Fee estimation
    _gauge("btc_fee_estimate_btc_per_kvb", "Estimated fee rate for confirmation within the target in BTC/kvB", "target_blocks"),

    # Chain tips
    _gauge("btc_chain_tips_count", "Number of known chain tips"),
    _gauge("btc_chain_tips", "Number of known chain tips by status", "status"),

    # Uptime
    _gauge("btc_node_uptime_seconds", "Node uptime in seconds"),

    # Latest block stats
    _gauge("btc_latest_block_transactions", "Number of transactions in the latest block"),
    _gauge("btc_latest_block_size_bytes", "Total size of the latest block in bytes"),
    _gauge("btc_latest_block_weight", "Total weight of the latest block"),
    _gauge("btc_latest_block_inputs", "Number of inputs in the latest block (excluding coinbase)"),
    _gauge("btc_latest_block_outputs", "Number of outputs in the latest block"),
    _gauge("btc_latest_block_segwit_transactions", "Number of segwit transactions in the latest block"),
    _gauge("btc_latest_block_segwit_size_bytes", "Total size of segwit transactions in the latest block"),
    _gauge("btc_latest_block_segwit_weight", "Total weight of segwit transactions in the latest block"),
    _gauge("btc_latest_block_avg_fee_sat", "Average fee per transaction in the latest block in satoshis"),
    _gauge("btc_latest_block_median_fee_sat", "Median fee in the latest block in satoshis"),
    _gauge("btc_latest_block_min_fee_sat", "Minimum fee in the latest block in satoshis"),
    _gauge("btc_latest_block_max_fee_sat", "Maximum fee in the latest block in satoshis"),
    _gauge("btc_latest_block_total_fee_sat", "Total fees in the latest block in satoshis"),
    _gauge("btc_latest_block_avg_fee_rate_sat_per_vb", "Average fee rate in the latest block in sat/vB"),
    _gauge("btc_latest_block_min_fee_rate_sat_per_vb", "Minimum fee rate in the latest block in sat/vB"),
    _gauge("btc_latest_block_max_fee_rate_sat_per_vb", "Maximum fee rate in the latest block in sat/vB"),
    _gauge("btc_latest_block_subsidy_sat", "Block subsidy of the latest block in satoshis"),
    _gauge("btc_latest_block_total_out_sat", "Total output value in the latest block in satoshis (excluding coinbase)"),
    _gauge("btc_latest_block_utxo_increase", "Change in UTXO count from the latest block"),
    _gauge("btc_latest_block_fee_rate_sat_per_vb", "Fee rate percentile in the latest block in sat/vB", "percentile"),
]

HEALTH_DESCRIPTORS = [
    _gauge("btc_exporter_up", "Always 1 while the exporter process is serving"),
    _gauge("btc_exporter_node_up", "Whether any node query succeeded in the last cycle (1=true, 0=false)"),
    _gauge("btc_exporter_auth_failure", "Whether the node rejected the configured credentials (1=true, 0=false)"),
    _gauge("btc_exporter_last_cycle_duration_seconds", "Duration of the last collection cycle in seconds"),
    _gauge("btc_exporter_last_cycle_error", "Whether any group failed in the last cycle (1=error, 0=ok)"),
    _gauge("btc_exporter_last_cycle_timestamp_seconds", "Completion time of the last collection cycle (unix seconds)"),
    _counter("btc_exporter_cycles_total", "Number of completed collection cycles"),
    _gauge("btc_exporter_group_stale", "Whether the group's values are carried over from an earlier cycle", "group"),
    _gauge("btc_exporter_group_consecutive_failures", "Consecutive failed queries for the group", "group"),
    _gauge("btc_exporter_group_last_success_timestamp_seconds", "Time of the group's last successful query (unix seconds)", "group"),
    _counter("btc_exporter_group_errors_total", "Failed queries by group and error kind", "group", "kind"),
]


def _block_stats_params(blockchain_result: Any) -> Tuple[Any, ...]:
    return (chain_handler.block_height(blockchain_result),)


def _node_groups(fee_targets: Sequence[int]) -> List[MetricGroup]:
    groups = [
        MetricGroup(
            name="blockchain",
            method="getblockchaininfo",
            mapper=chain_handler.map_blockchain_info,
            series=(
                series("btc_block_height"),
                series("btc_header_height"),
                series("btc_difficulty"),
                series("btc_verification_progress"),
                series("btc_size_on_disk_bytes"),
                series("btc_initial_block_download"),
                series("btc_chain_pruned"),
                series("btc_median_time_seconds"),
            ),
        ),
        MetricGroup(
            name="mempool",
            method="getmempoolinfo",
            mapper=mempool_handler.map_mempool_info,
            series=(
                series("btc_mempool_transactions"),
                series("btc_mempool_bytes"),
                series("btc_mempool_usage_bytes"),
                series("btc_mempool_max_bytes"),
                series("btc_mempool_min_fee_btc_per_kvb"),
                series("btc_mempool_min_relay_fee_btc_per_kvb"),
                series("btc_mempool_incremental_relay_fee_btc_per_kvb"),
                series("btc_mempool_total_fee_btc"),
                series("btc_mempool_unbroadcast_transactions"),
                series("btc_mempool_full_rbf"),
            ),
        ),
        MetricGroup(
            name="network",
            method="getnetworkinfo",
            mapper=network_handler.map_network_info,
            series=tuple(
                [series("btc_connections", d) for d in network_handler.CONNECTION_DIRECTIONS]
                + [
                    series("btc_network_active"),
                    series("btc_node_version"),
                    series("btc_protocol_version"),
                    series("btc_time_offset_seconds"),
                    series("btc_relay_fee_btc_per_kvb"),
                    series("btc_incremental_fee_btc_per_kvb"),
                ]
            ),
        ),
        MetricGroup(
            name="peers",
            method="getpeerinfo",
            mapper=network_handler.map_peer_info,
            series=tuple(
                [series("btc_peer_count")]
                + [series("btc_peers", d) for d in network_handler.PEER_DIRECTIONS]
                + [
                    series("btc_peers_bytes_sent"),
                    series("btc_peers_bytes_received"),
                    series("btc_peers_avg_ping_seconds"),
                ]
            ),
        ),
        MetricGroup(
            name="mining",
            method="getmininginfo",
            mapper=chain_handler.map_mining_info,
            series=(
                series("btc_network_hash_per_second"),
                series("btc_mining_pooled_transactions"),
            ),
        ),
        MetricGroup(
            name="chain_tx_stats",
            method="getchaintxstats",
            mapper=chain_handler.map_chain_tx_stats,
            series=(
                series("btc_chain_transactions_total"),
                series("btc_chain_tx_rate_per_second"),
                series("btc_chain_tx_window_blocks"),
                series("btc_chain_tx_window_transactions"),
                series("btc_chain_tx_window_interval_seconds"),
            ),
        ),
        MetricGroup(
            name="net_totals",
            method="getnettotals",
            mapper=network_handler.map_net_totals,
            series=tuple(series("btc_net_bytes_total", d) for d in network_handler.TRAFFIC_DIRECTIONS),
        ),
    ]

    for target in fee_targets:
        groups.append(
            MetricGroup(
                name=f"fee_estimate_{target}",
                method="estimatesmartfee",
                params=(target,),
                mapper=partial(mempool_handler.map_fee_estimate, target=target),
                series=(series("btc_fee_estimate_btc_per_kvb", str(target)),),
            )
        )

    groups.extend([
        MetricGroup(
            name="chain_tips",
            method="getchaintips",
            mapper=chain_handler.map_chain_tips,
            series=tuple(
                [series("btc_chain_tips_count")]
                + [series("btc_chain_tips", s) for s in chain_handler.CHAIN_TIP_STATUSES]
            ),
        ),
        MetricGroup(
            name="uptime",
            method="uptime",
            mapper=network_handler.map_uptime,
            series=(series("btc_node_uptime_seconds"),),
        ),
        MetricGroup(
            name="block_stats",
            method="getblockstats",
            mapper=chain_handler.map_block_stats,
            series=tuple(
                [series(metric) for metric in chain_handler.BLOCK_STATS_FIELDS.values()]
                + [
                    series("btc_latest_block_fee_rate_sat_per_vb", p)
                    for p in chain_handler.FEE_RATE_PERCENTILES
                ]
            ),
            depends_on="blockchain",
            params_from=_block_stats_params,
        ),
    ])

    return groups


class MetricCatalog:
    """
    Descriptors, node query groups and exporter-health series

    Usage:
        catalog = build_catalog(fee_targets=(2, 6, 12, 144))
        for group in catalog.groups:
            ...
    """

    def __init__(self, descriptors: Iterable[MetricDescriptor], groups: Iterable[MetricGroup]):
        self._descriptors: Dict[str, MetricDescriptor] = {}
        for descriptor in descriptors:
            if descriptor.name in self._descriptors:
                raise ValueError(f"Duplicate metric descriptor: {descriptor.name}")
            self._descriptors[descriptor.name] = descriptor

        self._groups: Tuple[MetricGroup, ...] = tuple(groups)
        group_names = [g.name for g in self._groups]
        if len(set(group_names)) != len(group_names) or HEALTH_GROUP in group_names:
            raise ValueError(f"Group names must be unique and not '{HEALTH_GROUP}': {group_names}")

        for group in self._groups:
            if group.depends_on is not None and group.depends_on not in group_names[:group_names.index(group.name)]:
                raise ValueError(f"Group {group.name} depends on {group.depends_on}, which must come first")

        self._health_series = self._build_health_series(group_names)

        seen = set()
        for key in self.all_series():
            self._check_series(key)
            if key in seen:
                raise ValueError(f"Series declared twice: {key}")
            seen.add(key)

    def _build_health_series(self, group_names: List[str]) -> Tuple[SeriesKey, ...]:
        keys = [
            series("btc_exporter_up"),
            series("btc_exporter_node_up"),
            series("btc_exporter_auth_failure"),
            series("btc_exporter_last_cycle_duration_seconds"),
            series("btc_exporter_last_cycle_error"),
            series("btc_exporter_last_cycle_timestamp_seconds"),
            series("btc_exporter_cycles_total"),
        ]
        for name in group_names:
            keys.append(series("btc_exporter_group_stale", name))
            keys.append(series("btc_exporter_group_consecutive_failures", name))
            keys.append(series("btc_exporter_group_last_success_timestamp_seconds", name))
            for kind in ErrorKind:
                keys.append(series("btc_exporter_group_errors_total", name, kind.value))
        return tuple(keys)

    def _check_series(self, key: SeriesKey):
        name, label_values = key
        descriptor = self._descriptors.get(name)
        if descriptor is None:
            raise ValueError(f"Series {key} has no descriptor")
        if len(label_values) != len(descriptor.labels):
            raise ValueError(
                f"Series {key} has {len(label_values)} label values, "
                f"descriptor {name} expects {descriptor.labels}"
            )

    @property
    def groups(self) -> Tuple[MetricGroup, ...]:
        return self._groups

    @property
    def descriptors(self) -> Tuple[MetricDescriptor, ...]:
        return tuple(self._descriptors.values())

    @property
    def health_series(self) -> Tuple[SeriesKey, ...]:
        return self._health_series

    def descriptor(self, name: str) -> MetricDescriptor:
        return self._descriptors[name]

    def group(self, name: str) -> MetricGroup:
        for group in self._groups:
            if group.name == name:
                return group
        raise KeyError(name)

    def all_series(self) -> List[SeriesKey]:
        """Every series in publication order: node groups first, then health"""
        keys: List[SeriesKey] = []
        for group in self._groups:
            keys.extend(group.series)
        keys.extend(self._health_series)
        return keys

    def __repr__(self) -> str:
        return (
            f"MetricCatalog(descriptors={len(self._descriptors)}, "
            f"groups={len(self._groups)}, series={len(self.all_series())})"
        )


def build_catalog(fee_targets: Sequence[int] = (2, 6, 12, 144)) -> MetricCatalog:
    """Build the standard catalog for the given fee estimate targets"""
    catalog = MetricCatalog(NODE_DESCRIPTORS + HEALTH_DESCRIPTORS, _node_groups(fee_targets))
    logger.info(f"Metric catalog built: {catalog!r}")
    return catalog
