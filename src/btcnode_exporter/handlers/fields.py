#!/usr/bin/env python3
"""
Field extraction helpers shared by the RPC response handlers

Every helper raises ParseError when the response does not have the
expected shape, so a malformed reply never leaks an untyped value into
a metric sample.
"""

import math
from typing import Any, List, Mapping, Tuple

from btcnode_exporter.clients.errors import ParseError


# (metric name, label values) identifying a single series
SeriesKey = Tuple[str, Tuple[str, ...]]

NAN = math.nan


def series(name: str, *label_values: str) -> SeriesKey:
    return (name, tuple(str(v) for v in label_values))


def require_mapping(result: Any, what: str) -> Mapping[str, Any]:
    if not isinstance(result, Mapping):
        raise ParseError(f"{what}: expected an object, got {type(result).__name__}")
    return result


def require_list(result: Any, what: str) -> List[Any]:
    if not isinstance(result, list):
        raise ParseError(f"{what}: expected an array, got {type(result).__name__}")
    return result


def as_number(value: Any, field: str) -> float:
    # bool is an int subclass; a flag where a number belongs is a shape error
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ParseError(f"field '{field}': expected a number, got {value!r}")
    return float(value)


def number(data: Mapping[str, Any], field: str) -> float:
    """Required numeric field"""
    if field not in data:
        raise ParseError(f"missing required field '{field}'")
    return as_number(data[field], field)


def optional_number(data: Mapping[str, Any], field: str) -> float:
    """Version-dependent numeric field; NaN when the node does not report it"""
    value = data.get(field)
    if value is None:
        return NAN
    return as_number(value, field)


def flag(data: Mapping[str, Any], field: str, required: bool = True) -> float:
    """Boolean field as 1.0 / 0.0"""
    if field not in data:
        if required:
            raise ParseError(f"missing required field '{field}'")
        return NAN
    value = data[field]
    if not isinstance(value, bool):
        raise ParseError(f"field '{field}': expected a boolean, got {value!r}")
    return 1.0 if value else 0.0

