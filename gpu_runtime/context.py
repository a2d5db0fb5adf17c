"""Devices, contexts, streams and events.

``Context`` wraps the device's retained primary context. Every method that
does device work pushes the context on entry and pops it on every exit
path, so callers never depend on whatever context happens to be current on
the thread. User code gets the same guarantee from ``ctx.apply(fn)`` or a
``with ctx:`` block.
"""

from __future__ import annotations

import hashlib
import logging
import threading
import weakref
from typing import Callable, TypeVar

import numpy as np

from gpu_runtime import graph as _graph
from gpu_runtime._driver import available, check, cp, driver
from gpu_runtime.collective import CollectiveCall, Communicator, ReduceOp
from gpu_runtime.errors import NoDevice
from gpu_runtime.jit import CompileOptions, KernelFn, Module
from gpu_runtime.memory import DevMem, MemProp, _check_same_size, device_nbytes, device_ptr, host_view

logger = logging.getLogger(__name__)

T = TypeVar("T")

_init_lock = threading.Lock()
_initialized = False


def init() -> None:
    """Initialize the driver once per process; raises NoDevice when unusable."""
    global _initialized
    with _init_lock:
        if _initialized:
            return
        if not available():
            raise NoDevice("CuPy and cuda-python are required for device support")
        (status,) = driver.cuInit(0)
        if status != driver.CUresult.CUDA_SUCCESS:
            raise NoDevice(f"cuInit failed: {status.name}")
        count = check(driver.cuDeviceGetCount(), "cuDeviceGetCount")
        if count == 0:
            raise NoDevice("no CUDA device present")
        _initialized = True
        logger.info("driver initialized, %d device(s)", count)


def device_count() -> int:
    init()
    return check(driver.cuDeviceGetCount(), "cuDeviceGetCount")


class Device:
    def __init__(self, ordinal: int = 0):
        init()
        self.ordinal = ordinal
        self.handle = check(driver.cuDeviceGet(ordinal), "cuDeviceGet")

    @property
    def name(self) -> str:
        raw = check(driver.cuDeviceGetName(256, self.handle), "cuDeviceGetName")
        return raw.split(b"\x00", 1)[0].decode()

    @property
    def compute_capability(self) -> tuple[int, int]:
        attr = driver.CUdevice_attribute
        major = check(driver.cuDeviceGetAttribute(attr.CU_DEVICE_ATTRIBUTE_COMPUTE_CAPABILITY_MAJOR, self.handle))
        minor = check(driver.cuDeviceGetAttribute(attr.CU_DEVICE_ATTRIBUTE_COMPUTE_CAPABILITY_MINOR, self.handle))
        return major, minor

    def mem_prop(self) -> MemProp:
        return MemProp(self.ordinal)

    def context(self) -> Context:
        return Context(self)

    def __repr__(self) -> str:
        return f"Device({self.ordinal})"


def _release_primary(device_handle) -> None:
    driver.cuDevicePrimaryCtxRelease(device_handle)


class Context:
    def __init__(self, device: Device | int = 0):
        if not isinstance(device, Device):
            device = Device(device)
        self.device = device
        self.handle = check(driver.cuDevicePrimaryCtxRetain(device.handle), "cuDevicePrimaryCtxRetain")
        self._finalizer = weakref.finalize(self, _release_primary, device.handle)
        self._finalizer.atexit = False
        self._modules: dict[str, Module] = {}

    def __enter__(self) -> Context:
        check(driver.cuCtxPushCurrent(self.handle), "cuCtxPushCurrent")
        return self

    def __exit__(self, *exc) -> None:
        check(driver.cuCtxPopCurrent(), "cuCtxPopCurrent")

    def apply(self, fn: Callable[[Context], T]) -> T:
        """Run ``fn(self)`` with this context current."""
        with self:
            return fn(self)

    def synchronize(self) -> None:
        with self:
            check(driver.cuCtxSynchronize(), "cuCtxSynchronize")

    def malloc(self, count: int, dtype=np.uint8) -> DevMem:
        with self:
            return DevMem(count, dtype)

    def stream(self) -> Stream:
        return Stream(self)

    def instantiate(self, graph: _graph.Graph) -> _graph.InstantiatedGraph:
        return _graph.instantiate(graph, self)

    def load_module(self, src: str, options: CompileOptions | None = None, name: str = "module.cu") -> Module:
        """Compile and load ``src``; repeated loads of the same source return the cached module."""
        options = options or CompileOptions.from_env()
        if options.arch is None:
            major, minor = self.device.compute_capability
            options = options.with_arch(f"compute_{major}{minor}")
        key = hashlib.md5((src + repr(options)).encode()).hexdigest()
        module = self._modules.get(key)
        if module is None:
            with self:
                module = Module.compile(src, options, name)
            self._modules[key] = module
        return module

    def release(self) -> None:
        with self:
            for module in self._modules.values():
                module.unload()
        self._modules.clear()
        self._finalizer()

    def __repr__(self) -> str:
        return f"Context({self.device!r})"


class Event:
    def __init__(self, event):
        self._event = event

    @property
    def done(self) -> bool:
        return self._event.done

    def synchronize(self) -> None:
        self._event.synchronize()

    wait = synchronize


class Stream:
    """Owned non-blocking stream; submissions run in FIFO order."""

    def __init__(self, ctx: Context):
        self.ctx = ctx
        with ctx:
            self._stream = cp.cuda.Stream(non_blocking=True)
        self.handle = driver.CUstream(self._stream.ptr)

    @property
    def ptr(self) -> int:
        return self._stream.ptr

    def synchronize(self) -> None:
        with self.ctx:
            self._stream.synchronize()

    def record(self) -> Event:
        with self.ctx:
            return Event(self._stream.record())

    def wait(self, event: Event) -> None:
        with self.ctx:
            self._stream.wait_event(event._event)

    def memcpy_d2d(self, dst, src) -> None:
        n = device_nbytes(dst)
        _check_same_size(n, device_nbytes(src))
        if n:
            with self.ctx:
                check(driver.cuMemcpyDtoDAsync(device_ptr(dst), device_ptr(src), n, self.handle), "cuMemcpyDtoDAsync")

    def memcpy_h2d_async(self, dst, host: np.ndarray) -> None:
        """Caller keeps ``host`` alive and unmodified until the copy completes."""
        src = host_view(host)
        _check_same_size(device_nbytes(dst), src.nbytes)
        if src.nbytes:
            with self.ctx:
                check(
                    driver.cuMemcpyHtoDAsync(device_ptr(dst), src.ctypes.data, src.nbytes, self.handle),
                    "cuMemcpyHtoDAsync",
                )

    def memcpy_d2h_async(self, host: np.ndarray, src) -> None:
        dst = host_view(host)
        _check_same_size(dst.nbytes, device_nbytes(src))
        if dst.nbytes:
            with self.ctx:
                check(
                    driver.cuMemcpyDtoHAsync(dst.ctypes.data, device_ptr(src), dst.nbytes, self.handle),
                    "cuMemcpyDtoHAsync",
                )

    def launch(self, kernel: KernelFn, grid, block, shared: int, params) -> None:
        with self.ctx:
            kernel.launch(grid, block, shared, self, params)

    def launch_graph(self, instantiated: _graph.InstantiatedGraph) -> None:
        instantiated.launch(self)

    def all_reduce(self, comm: Communicator, send, recv, count: int, dtype, op: ReduceOp = ReduceOp.SUM) -> None:
        with self.ctx:
            CollectiveCall.all_reduce(comm, send, recv, count, dtype, op).issue(self.ptr)

    def capture(self) -> _graph.CaptureStream:
        return _graph.CaptureStream(self)

    def close(self) -> None:
        """Wait for queued work, then drop the stream."""
        self.synchronize()
        self._stream = None
        self.handle = None
