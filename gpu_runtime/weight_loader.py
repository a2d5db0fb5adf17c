"""Stream host weights into one packed device buffer through pinned staging.

Each ``load`` copies the tensor into a pinned staging buffer on the host,
then queues an async pinned-to-device copy and records an event. The
buffer goes back to the pool once its event completes, so host copies of
later tensors overlap with DMA of earlier ones.
"""

from __future__ import annotations

import itertools
import logging
from typing import TYPE_CHECKING, Iterable

import numpy as np

from gpu_runtime._driver import check, cp, cupy_call, driver
from gpu_runtime.errors import StagingExhausted
from gpu_runtime.memory import DevMem, device_nbytes, device_ptr, host_view

if TYPE_CHECKING:
    from gpu_runtime.context import Context, Event, Stream
    from nn_graph.buffer_planner import WeightPlan
    from nn_graph.tensor import Tensor

logger = logging.getLogger(__name__)


class StagingBuffer:
    """Pinned host buffer plus the event of its last queued copy."""

    def __init__(self, capacity: int):
        self.capacity = capacity
        with cupy_call("cupy.cuda.alloc_pinned_memory"):
            self._mem = cp.cuda.alloc_pinned_memory(capacity)
        self.host = np.frombuffer(self._mem, np.uint8, capacity)
        self.ptr = self._mem.ptr
        self.event: Event | None = None
        self.seq = -1

    @property
    def busy(self) -> bool:
        return self.event is not None and not self.event.done

    def wait(self) -> None:
        if self.event is not None:
            self.event.synchronize()
            self.event = None

    def __repr__(self) -> str:
        return f"StagingBuffer({self.capacity}, busy={self.busy})"


class WeightLoader:
    """Pool of pinned staging buffers, one per requested size."""

    def __init__(self, sizes: Iterable[int]):
        self._pool: list[StagingBuffer] = []
        self._seq = itertools.count()
        self.staged_bytes = 0
        for size in sizes:
            if size > 0:
                self._add(size)

    def _add(self, size: int) -> StagingBuffer:
        buf = StagingBuffer(size)
        self._pool.append(buf)
        self._pool.sort(key=lambda b: b.capacity)
        return buf

    @property
    def capacity(self) -> list[int]:
        return [b.capacity for b in self._pool]

    def _acquire(self, length: int) -> StagingBuffer:
        candidates = [b for b in self._pool if b.capacity >= length]
        if not candidates:
            raise StagingExhausted(f"no staging buffer holds {length} bytes")
        for buf in candidates:
            if not buf.busy:
                return buf
        oldest = min(candidates, key=lambda b: b.seq)
        oldest.wait()
        return oldest

    def load(self, dst, host: np.ndarray, stream: Stream) -> None:
        """Queue a copy of ``host`` into the device range ``dst`` on ``stream``."""
        src = host_view(np.ascontiguousarray(host))
        n = src.nbytes
        if n > device_nbytes(dst):
            raise ValueError(f"Source of {n} bytes overflows destination of {device_nbytes(dst)} bytes")
        if n == 0:
            return
        try:
            buf = self._acquire(n)
        except StagingExhausted:
            logger.debug("growing staging pool by %d bytes", n)
            buf = self._add(n)
        buf.wait()
        buf.host[:n] = src
        with stream.ctx:
            check(driver.cuMemcpyHtoDAsync(device_ptr(dst), buf.ptr, n, stream.handle), "cuMemcpyHtoDAsync")
        buf.event = stream.record()
        buf.seq = next(self._seq)
        self.staged_bytes += n

    def synchronize(self) -> None:
        for buf in self._pool:
            buf.wait()

    def release(self) -> None:
        self.synchronize()
        self._pool.clear()


def load_weights(
    ctx: Context,
    tensors: Iterable[Tensor],
    plan: WeightPlan,
    stream: Stream,
    block_count: int = 4,
) -> tuple[DevMem, list[Tensor]]:
    """Allocate the packed weight buffer and stream every weight into it.

    Returns the buffer and the tensors with weights rebound to their device
    ranges; activations are passed through unchanged.
    """
    from nn_graph.tensor import HostStorage

    memory = ctx.malloc(plan.size)
    loader = WeightLoader(plan.staging_sizes(block_count))
    loaded: set[int] = set()
    out = []
    for tensor in tensors:
        if not isinstance(tensor.storage, HostStorage):
            out.append(tensor)
            continue
        r = plan.range_of(tensor)
        if tensor.storage.ptr not in loaded:
            loader.load(memory[r], tensor.storage.array, stream)
            loaded.add(tensor.storage.ptr)
        out.append(tensor.with_storage(plan.device_range(tensor)))
    loader.release()
    logger.info("loaded %d weights, %d bytes into %d byte buffer", len(loaded), loader.staged_bytes, plan.size)
    return memory, out
