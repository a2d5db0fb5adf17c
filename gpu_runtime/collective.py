"""NCCL collectives through ``cupy.cuda.nccl``.

A ``CollectiveCall`` is a fully-bound collective: it can be issued on a
stream directly or captured into a driver graph so it can sit in a device
graph as a child-graph node.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Sequence

import numpy as np

from gpu_runtime._driver import check, driver
from gpu_runtime.memory import device_ptr

logger = logging.getLogger(__name__)


def _nccl():
    from cupy.cuda import nccl

    return nccl


class ReduceOp(Enum):
    SUM = "NCCL_SUM"
    PROD = "NCCL_PROD"
    MAX = "NCCL_MAX"
    MIN = "NCCL_MIN"
    AVG = "NCCL_AVG"

    @property
    def nccl(self) -> int:
        return getattr(_nccl(), self.value)


_NCCL_DTYPES = {
    "int8": "NCCL_INT8",
    "uint8": "NCCL_UINT8",
    "int32": "NCCL_INT32",
    "uint32": "NCCL_UINT32",
    "int64": "NCCL_INT64",
    "uint64": "NCCL_UINT64",
    "float16": "NCCL_FLOAT16",
    "float32": "NCCL_FLOAT32",
    "float64": "NCCL_FLOAT64",
    "bfloat16": "NCCL_BFLOAT16",
}


def nccl_dtype(dtype) -> int:
    """``ncclDataType_t`` value for a numpy (or ml_dtypes) dtype."""
    dtype = np.dtype(dtype)
    try:
        name = _NCCL_DTYPES[dtype.name]
    except KeyError:
        raise TypeError(f"NCCL does not support dtype {dtype}") from None
    return getattr(_nccl(), name)


class Communicator:
    """One rank of an NCCL clique."""

    def __init__(self, comm):
        self._comm = comm

    @classmethod
    def init_all(cls, devices: Sequence[int]) -> list[Communicator]:
        """Single-process clique over ``devices``, one communicator per device."""
        comms = _nccl().NcclCommunicator.initAll(list(devices))
        logger.info("initialized NCCL clique over devices %s", list(devices))
        return [cls(c) for c in comms]

    @property
    def rank(self) -> int:
        return self._comm.rank_id()

    @property
    def size(self) -> int:
        return self._comm.size()

    @property
    def device(self) -> int:
        return self._comm.device_id()

    def all_reduce(self, send, recv, count: int, dtype, op: ReduceOp, stream_ptr: int) -> None:
        self._comm.allReduce(device_ptr(send), device_ptr(recv), count, nccl_dtype(dtype), op.nccl, stream_ptr)

    def broadcast(self, send, recv, count: int, dtype, root: int, stream_ptr: int) -> None:
        self._comm.broadcast(device_ptr(send), device_ptr(recv), count, nccl_dtype(dtype), root, stream_ptr)

    def destroy(self) -> None:
        self._comm.destroy()


@dataclass(frozen=True)
class CollectiveCall:
    comm: Communicator
    kind: str
    send: int
    recv: int
    count: int
    dtype: np.dtype
    op: ReduceOp = ReduceOp.SUM
    root: int = 0

    @classmethod
    def all_reduce(cls, comm: Communicator, send, recv, count: int, dtype, op: ReduceOp = ReduceOp.SUM):
        return cls(comm, "all_reduce", device_ptr(send), device_ptr(recv), count, np.dtype(dtype), op)

    @classmethod
    def broadcast(cls, comm: Communicator, send, recv, count: int, dtype, root: int = 0):
        return cls(comm, "broadcast", device_ptr(send), device_ptr(recv), count, np.dtype(dtype), root=root)

    def issue(self, stream_ptr: int) -> None:
        if self.kind == "all_reduce":
            self.comm.all_reduce(self.send, self.recv, self.count, self.dtype, self.op, stream_ptr)
        elif self.kind == "broadcast":
            self.comm.broadcast(self.send, self.recv, self.count, self.dtype, self.root, stream_ptr)
        else:
            raise ValueError(f"Unknown collective kind: {self.kind}")

    def capture(self):
        """Record this call into a new driver graph (caller destroys it)."""
        from gpu_runtime._driver import cp

        scratch = cp.cuda.Stream(non_blocking=True)
        handle = driver.CUstream(scratch.ptr)
        check(
            driver.cuStreamBeginCapture(handle, driver.CUstreamCaptureMode.CU_STREAM_CAPTURE_MODE_THREAD_LOCAL),
            "cuStreamBeginCapture",
        )
        try:
            self.issue(scratch.ptr)
        except Exception:
            _, partial = driver.cuStreamEndCapture(handle)
            if partial:
                driver.cuGraphDestroy(partial)
            raise
        return check(driver.cuStreamEndCapture(handle), "cuStreamEndCapture")
