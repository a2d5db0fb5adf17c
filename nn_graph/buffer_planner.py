"""Packed weight-buffer planner.

Weights are laid out in one device buffer with a monotonic bump allocator:
every request is placed at the next ``align``-aligned offset after the
previous one, in call order. Deduplication happens before ``push``: tensors
that share a host pointer share a range.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Iterable

from nn_graph.errors import PlannerAliasLenMismatch
from nn_graph.tensor import DeviceRange, HostStorage, Tensor

logger = logging.getLogger(__name__)

DEFAULT_ALIGN = 512


def round_up(value: int, align: int) -> int:
    return (value + align - 1) & ~(align - 1)


class MemCalculator:
    """Bump allocator over a single packed buffer."""

    def __init__(self, align: int = DEFAULT_ALIGN):
        if align <= 0 or align & (align - 1):
            raise ValueError(f"Alignment must be a positive power of two, got {align}")
        self._align = align
        self._cursor = 0

    @property
    def align(self) -> int:
        return self._align

    def push(self, length: int) -> range:
        """Reserve ``length`` bytes; returns the half-open byte range."""
        if length < 0:
            raise ValueError(f"Negative length: {length}")
        base = round_up(self._cursor, self._align)
        self._cursor = base + length
        return range(base, base + length)

    def size(self) -> int:
        """Total packed length, rounded up to the alignment."""
        return round_up(self._cursor, self._align)


@dataclass
class WeightPlan:
    """Byte ranges of every distinct weight inside the packed buffer.

    ``ranges`` is keyed by host pointer; ``histogram`` maps a tensor length to
    the number of distinct tensors of that length.
    """

    align: int
    size: int
    ranges: dict[int, range] = field(default_factory=dict)
    histogram: dict[int, int] = field(default_factory=dict)

    def range_of(self, tensor: Tensor) -> range:
        storage = tensor.storage
        if not isinstance(storage, HostStorage):
            raise TypeError(f"Tensor '{tensor.name}' has no host storage")
        return self.ranges[storage.ptr]

    def device_range(self, tensor: Tensor) -> DeviceRange:
        r = self.range_of(tensor)
        return DeviceRange(r.start, len(r))

    def staging_sizes(self, block_count: int) -> list[int]:
        """Lengths that occur fewer than ``block_count`` times, ascending."""
        return sorted(size for size, times in self.histogram.items() if times < block_count)


def plan_weights(tensors: Iterable[Tensor], align: int = DEFAULT_ALIGN) -> WeightPlan:
    """Assign a packed range to every weight tensor, deduplicated by host pointer.

    Non-weight tensors are skipped. The same pointer with the same length
    reuses the first range; a different length raises PlannerAliasLenMismatch.
    """
    calculator = MemCalculator(align)
    ranges: dict[int, range] = {}
    histogram: Counter[int] = Counter()

    for tensor in tensors:
        storage = tensor.storage
        if not isinstance(storage, HostStorage):
            continue
        ptr, length = storage.ptr, storage.nbytes
        existing = ranges.get(ptr)
        if existing is not None:
            if len(existing) != length:
                raise PlannerAliasLenMismatch(ptr, len(existing), length, tensor.name)
            logger.debug("weight %s aliases %#x", tensor.name, ptr)
            continue
        ranges[ptr] = calculator.push(length)
        histogram[length] += 1

    plan = WeightPlan(align=align, size=calculator.size(), ranges=ranges, histogram=dict(histogram))
    logger.info("planned %d weights into %d bytes (align %d)", len(ranges), plan.size, align)
    return plan
