#!/usr/bin/env python3
"""
Prometheus Text Exposition

Renders a RegistrySnapshot in the Prometheus text format (version 0.0.4):
one # HELP / # TYPE pair per metric family followed by one line per
series, families in catalog order.
"""

import math
from typing import List, Tuple

from prometheus_client.utils import floatToGoString

from btcnode_exporter.monitor.registry import MetricSample, RegistrySnapshot


CONTENT_TYPE = "text/plain; version=0.0.4; charset=utf-8"

# Integers above this lose precision as floats, so keep float notation
_MAX_EXACT_INT = 2 ** 53


def format_value(value: float) -> str:
    """
    Format a sample value

    Examples:
        - 800000.0 -> "800000"
        - 0.9999 -> "0.9999"
        - nan -> "NaN", inf -> "+Inf", -inf -> "-Inf"
    """
    if math.isnan(value) or math.isinf(value):
        return floatToGoString(value)
    if float(value).is_integer() and abs(value) < _MAX_EXACT_INT:
        return str(int(value))
    return floatToGoString(value)


def escape_label_value(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


def escape_help(text: str) -> str:
    return text.replace("\\", "\\\\").replace("\n", "\\n")


def format_labels(labels: Tuple[Tuple[str, str], ...]) -> str:
    if not labels:
        return ""
    inner = ",".join(f'{name}="{escape_label_value(value)}"' for name, value in labels)
    return f"{{{inner}}}"


def format_sample(sample: MetricSample, include_timestamp: bool = False) -> str:
    labels = format_labels(tuple(zip(sample.descriptor.labels, sample.label_values)))
    line = f"{sample.descriptor.name}{labels} {format_value(sample.value)}"
    if include_timestamp:
        line += f" {int(round(sample.timestamp * 1000))}"
    return line


def render_snapshot(snapshot: RegistrySnapshot, include_timestamps: bool = False) -> str:
    """
    Render every sample of a snapshot

    Args:
        snapshot: Snapshot to render (read once by the caller)
        include_timestamps: Append each sample's collection time in ms

    Returns:
        Exposition text ending with a newline
    """
    lines: List[str] = []

    for descriptor, samples in snapshot.families():
        lines.append(f"# HELP {descriptor.name} {escape_help(descriptor.help)}")
        lines.append(f"# TYPE {descriptor.name} {descriptor.kind.value}")
        for sample in samples:
            lines.append(format_sample(sample, include_timestamps))

    return "\n".join(lines) + "\n"
