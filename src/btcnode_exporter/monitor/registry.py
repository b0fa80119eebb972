#!/usr/bin/env python3
"""
Metric Registry

Holds the most recent complete set of metric samples as an immutable
snapshot. The collector builds a whole new snapshot each cycle and
publishes it with a single reference swap; the exposition server reads
whichever snapshot is current when a scrape arrives. Readers therefore
see either the complete previous cycle or the complete new one.
"""

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from types import MappingProxyType
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

from btcnode_exporter.handlers.fields import SeriesKey
from btcnode_exporter.monitor.catalog import MetricDescriptor


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MetricSample:
    """
    One series value from one collection cycle

    Attributes:
        descriptor: Metric family definition
        label_values: One value per label in descriptor.labels
        value: Numeric value (NaN before the first successful query)
        timestamp: Collection time of the value (unix seconds)
        stale: True when the value was carried over from an earlier cycle
    """
    descriptor: MetricDescriptor
    label_values: Tuple[str, ...]
    value: float
    timestamp: float
    stale: bool = False

    @property
    def key(self) -> SeriesKey:
        return (self.descriptor.name, self.label_values)

    @property
    def labels(self) -> Dict[str, str]:
        return dict(zip(self.descriptor.labels, self.label_values))

    def as_stale(self) -> "MetricSample":
        """Same value and timestamp, flagged as carried over"""
        if self.stale:
            return self
        return MetricSample(self.descriptor, self.label_values, self.value, self.timestamp, True)


class RegistrySnapshot(Mapping):
    """
    Immutable, point-in-time mapping of series key -> MetricSample

    Iteration follows publication order (catalog order), which the
    exposition format relies on to keep each metric family together.
    """

    def __init__(self, samples: Iterable[MetricSample], sequence: int, created_at: float):
        entries: Dict[SeriesKey, MetricSample] = {}
        for sample in samples:
            if sample.key in entries:
                raise ValueError(f"Duplicate sample for series {sample.key}")
            entries[sample.key] = sample

        self._samples = MappingProxyType(entries)
        self._sequence = sequence
        self._created_at = created_at

    def __getitem__(self, key: SeriesKey) -> MetricSample:
        return self._samples[key]

    def __iter__(self) -> Iterator[SeriesKey]:
        return iter(self._samples)

    def __len__(self) -> int:
        return len(self._samples)

    @property
    def sequence(self) -> int:
        """Cycle number that produced this snapshot (0 = bootstrap)"""
        return self._sequence

    @property
    def created_at(self) -> float:
        return self._created_at

    @property
    def is_bootstrap(self) -> bool:
        return self._sequence == 0

    def samples(self) -> List[MetricSample]:
        return list(self._samples.values())

    def value(self, name: str, *label_values: str) -> float:
        return self._samples[(name, tuple(label_values))].value

    def families(self) -> List[Tuple[MetricDescriptor, List[MetricSample]]]:
        """Samples grouped by descriptor, in first-seen order"""
        grouped: Dict[str, Tuple[MetricDescriptor, List[MetricSample]]] = {}
        for sample in self._samples.values():
            entry = grouped.get(sample.descriptor.name)
            if entry is None:
                entry = (sample.descriptor, [])
                grouped[sample.descriptor.name] = entry
            entry[1].append(sample)
        return list(grouped.values())

    def __repr__(self) -> str:
        stale = sum(1 for s in self._samples.values() if s.stale)
        return f"RegistrySnapshot(sequence={self._sequence}, series={len(self)}, stale={stale})"


class MetricRegistry:
    """
    Single reference to the current snapshot

    publish() is called only by the scheduler after a collection cycle;
    current() only by the exposition server. Both run on the same event
    loop and the swap is one attribute assignment, so no lock is held.
    """

    def __init__(self, initial: RegistrySnapshot):
        self._current = initial
        self._published = 0
        self._last_published_at: Optional[float] = None

        logger.info(f"MetricRegistry initialized with {initial!r}")

    def publish(self, snapshot: RegistrySnapshot):
        """Replace the current snapshot"""
        if snapshot.sequence <= self._current.sequence:
            logger.warning(
                f"Publishing snapshot {snapshot.sequence} over newer or equal "
                f"snapshot {self._current.sequence}"
            )
        self._current = snapshot
        self._published += 1
        self._last_published_at = snapshot.created_at
        logger.debug(f"Published {snapshot!r}")

    def current(self) -> RegistrySnapshot:
        return self._current

    @property
    def published_count(self) -> int:
        return self._published

    @property
    def last_published_at(self) -> Optional[float]:
        return self._last_published_at

    def __repr__(self) -> str:
        return f"MetricRegistry(current={self._current!r}, published={self._published})"
