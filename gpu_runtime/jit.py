"""NVRTC JIT compilation, module loading and kernel launch.

Pipeline:
    1. ``Symbol.search`` finds the ``extern "C"`` entry points in the source;
    2. ``compile_ptx`` compiles the source to PTX with NVRTC;
    3. ``Module`` loads the PTX and resolves every global symbol to a ``KernelFn``.

Kernel arguments are marshaled by ``KernelParams``, which owns one host
buffer per argument; ``KernelParamPtrs`` is the ``void**`` array handed to
the driver and stays valid as long as the params object is alive.
"""

from __future__ import annotations

import ctypes
import logging
import os
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import TYPE_CHECKING, Any, Sequence

import numpy as np

from gpu_runtime._driver import check, driver, nvrtc
from gpu_runtime.errors import InvalidLaunchConfig, JitCompileError, SymbolNotFound
from gpu_runtime.memory import DevSlice, device_ptr

if TYPE_CHECKING:
    from gpu_runtime.context import Stream

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Symbol discovery
# ---------------------------------------------------------------------------


class SymbolKind(Enum):
    GLOBAL = "global"
    DEVICE = "device"


@dataclass(frozen=True)
class Symbol:
    kind: SymbolKind
    name: str

    @classmethod
    def global_(cls, name: str) -> Symbol:
        return cls(SymbolKind.GLOBAL, name)

    @classmethod
    def device(cls, name: str) -> Symbol:
        return cls(SymbolKind.DEVICE, name)

    @staticmethod
    def search(code: str) -> list[Symbol]:
        """Externally visible symbols declared with ``extern "C"``, in source order.

        A head with both ``__global__`` and ``void`` is an entry-point kernel;
        a head with ``__device__`` is a device function. The symbol name is the
        last whitespace-separated token before ``(``.
        """
        symbols = []
        for chunk in code.split("extern")[1:]:
            chunk = chunk.strip()
            if not chunk.startswith('"C"'):
                continue
            head, paren, _ = chunk[3:].partition("(")
            if not paren:
                continue
            head = head.strip()
            if "__global__" in head and "void" in head:
                kind = SymbolKind.GLOBAL
            elif "__device__" in head:
                kind = SymbolKind.DEVICE
            else:
                continue
            symbols.append(Symbol(kind, head.split()[-1].lstrip("*&")))
        return symbols


# ---------------------------------------------------------------------------
# Compilation
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CompileOptions:
    """NVRTC options. ``arch`` is e.g. ``"compute_80"``; None lets the context fill it."""

    include_paths: tuple[str, ...] = ()
    extra_flags: tuple[str, ...] = ()
    no_host_device_constexpr: bool = False
    disable_version_check: bool = False
    arch: str | None = None

    @classmethod
    def from_env(cls, **overrides) -> CompileOptions:
        """Options with ``$CUDA_HOME/include`` and ``$NN_GRAPH_INCLUDE_PATH`` entries."""
        paths: list[str] = []
        cuda_home = os.environ.get("CUDA_HOME", "/usr/local/cuda")
        include = os.path.join(cuda_home, "include")
        if os.path.isdir(include):
            paths.append(include)
        extra = os.environ.get("NN_GRAPH_INCLUDE_PATH", "")
        paths.extend(p for p in extra.split(os.pathsep) if p)
        overrides.setdefault("include_paths", tuple(paths))
        return cls(**overrides)

    def with_arch(self, arch: str) -> CompileOptions:
        return replace(self, arch=arch)

    def to_nvrtc_args(self) -> list[bytes]:
        args: list[str] = []
        if self.arch:
            args.append(f"--gpu-architecture={self.arch}")
        for path in self.include_paths:
            args.append(f"--include-path={path}")
        if self.no_host_device_constexpr:
            args += ["-Xclang", "-fno-cuda-host-device-constexpr"]
        if self.disable_version_check:
            args.append("--no-cuda-version-check")
        args.extend(self.extra_flags)
        return [a.encode() for a in args]


DEFAULT_OPTIONS = CompileOptions()


def _program_log(prog) -> str:
    size = check(nvrtc.nvrtcGetProgramLogSize(prog), "nvrtcGetProgramLogSize")
    log = b" " * size
    check(nvrtc.nvrtcGetProgramLog(prog, log), "nvrtcGetProgramLog")
    return log.rstrip(b"\x00").decode(errors="replace")


def compile_ptx(src: str, options: CompileOptions = DEFAULT_OPTIONS, name: str = "module.cu") -> bytes:
    """Compile CUDA C source to NUL-terminated PTX; raises JitCompileError with the log."""
    prog = check(nvrtc.nvrtcCreateProgram(src.encode(), name.encode(), 0, [], []), "nvrtcCreateProgram")
    try:
        opts = options.to_nvrtc_args()
        (status,) = nvrtc.nvrtcCompileProgram(prog, len(opts), opts)
        if status != nvrtc.nvrtcResult.NVRTC_SUCCESS:
            raise JitCompileError(_program_log(prog), name)
        size = check(nvrtc.nvrtcGetPTXSize(prog), "nvrtcGetPTXSize")
        ptx = b" " * size
        check(nvrtc.nvrtcGetPTX(prog, ptx), "nvrtcGetPTX")
    finally:
        nvrtc.nvrtcDestroyProgram(prog)
    logger.debug("compiled %s: %d bytes of PTX", name, len(ptx))
    return ptx


# ---------------------------------------------------------------------------
# Kernel arguments
# ---------------------------------------------------------------------------


def _to_storage(value: Any) -> ctypes.Array | ctypes._SimpleCData:
    if isinstance(value, ctypes._SimpleCData):
        return value
    if isinstance(value, DevSlice) or hasattr(value, "ptr") or hasattr(value, "data"):
        if not isinstance(value, (np.ndarray, np.generic)):
            return ctypes.c_void_p(device_ptr(value))
    if isinstance(value, (bool, int, float)):
        value = np.asarray(value)[()]
    if isinstance(value, np.generic):
        raw = value.tobytes()
        return (ctypes.c_ubyte * len(raw)).from_buffer_copy(raw)
    raise TypeError(f"Unsupported kernel argument type: {type(value).__name__}")


class KernelParams:
    """Owned argument storage for one kernel launch or kernel graph node.

    Device buffers (``DevSlice``, CuPy arrays, anything with ``.ptr``) become
    pointers; numpy scalars keep their dtype; Python scalars follow numpy's
    default promotion (``int`` -> int64, ``float`` -> float64).
    """

    def __init__(self, *args: Any):
        self._storage: list = []
        for arg in args:
            self.push(arg)

    def push(self, value: Any) -> KernelParams:
        self._storage.append(_to_storage(value))
        return self

    def __len__(self) -> int:
        return len(self._storage)

    def raw(self) -> tuple[bytes, ...]:
        return tuple(bytes(memoryview(s)) if isinstance(s, ctypes.Array) else bytes(s) for s in self._storage)

    def __eq__(self, other) -> bool:
        if not isinstance(other, KernelParams):
            return NotImplemented
        return self.raw() == other.raw()

    __hash__ = None

    def ptrs(self) -> KernelParamPtrs:
        return KernelParamPtrs(self)

    @classmethod
    def of(cls, params) -> KernelParams:
        if isinstance(params, KernelParams):
            return params
        if params is None:
            return cls()
        return cls(*params)


class KernelParamPtrs:
    """``void*[]`` pointing into a KernelParams' storage."""

    def __init__(self, params: KernelParams):
        self._params = params
        storage = params._storage
        self._array = (ctypes.c_void_p * max(len(storage), 1))(
            *[ctypes.addressof(s) for s in storage]
        )

    @property
    def address(self) -> int:
        return ctypes.addressof(self._array) if len(self._params) else 0


# ---------------------------------------------------------------------------
# Kernels and modules
# ---------------------------------------------------------------------------


def dim3(value, what: str) -> tuple[int, int, int]:
    """Normalize a launch dimension to a 3-tuple of positive ints."""
    dims = (value,) if isinstance(value, int) else tuple(value)
    if not 1 <= len(dims) <= 3:
        raise InvalidLaunchConfig(f"{what} must have 1 to 3 dimensions, got {value!r}")
    for d in dims:
        if isinstance(d, bool) or not isinstance(d, (int, np.integer)) or d <= 0:
            raise InvalidLaunchConfig(f"{what} dimensions must be positive integers, got {value!r}")
    dims = tuple(int(d) for d in dims) + (1,) * (3 - len(dims))
    return dims  # type: ignore[return-value]


@dataclass(frozen=True)
class LaunchConfig:
    grid: tuple[int, int, int]
    block: tuple[int, int, int]
    shared: int = 0

    @classmethod
    def of(cls, grid, block, shared: int = 0) -> LaunchConfig:
        if shared < 0:
            raise InvalidLaunchConfig(f"Shared memory must be non-negative, got {shared}")
        return cls(dim3(grid, "grid"), dim3(block, "block"), int(shared))


class KernelFn:
    """A resolved ``__global__`` function of a loaded module."""

    def __init__(self, handle, name: str, module: Module):
        self.handle = handle
        self.name = name
        self._module = module

    def __repr__(self) -> str:
        return f"KernelFn({self.name})"

    def launch(self, grid, block, shared: int, stream: Stream | None, params) -> None:
        config = LaunchConfig.of(grid, block, shared)
        params = KernelParams.of(params)
        ptrs = params.ptrs()
        check(
            driver.cuLaunchKernel(
                self.handle,
                *config.grid,
                *config.block,
                config.shared,
                stream.handle if stream is not None else 0,
                ptrs.address,
                0,
            ),
            f"cuLaunchKernel({self.name})",
        )


@dataclass
class Module:
    """Loaded PTX module with its discovered symbols and kernel functions."""

    handle: Any
    symbols: list[Symbol]
    functions: dict[str, KernelFn] = field(default_factory=dict)

    @classmethod
    def load(cls, ptx: bytes, symbols: Sequence[Symbol]) -> Module:
        handle = check(driver.cuModuleLoadData(ptx), "cuModuleLoadData")
        module = cls(handle, list(symbols))
        for symbol in symbols:
            if symbol.kind is SymbolKind.GLOBAL:
                fn = check(driver.cuModuleGetFunction(handle, symbol.name.encode()), "cuModuleGetFunction")
                module.functions[symbol.name] = KernelFn(fn, symbol.name, module)
        logger.info("loaded module with kernels %s", sorted(module.functions))
        return module

    @classmethod
    def compile(cls, src: str, options: CompileOptions = DEFAULT_OPTIONS, name: str = "module.cu") -> Module:
        return cls.load(compile_ptx(src, options, name), Symbol.search(src))

    def get_function(self, name: str) -> KernelFn:
        try:
            return self.functions[name]
        except KeyError:
            raise SymbolNotFound(name) from None

    __getitem__ = get_function

    def unload(self) -> None:
        if self.handle is not None:
            check(driver.cuModuleUnload(self.handle), "cuModuleUnload")
            self.handle = None
            self.functions.clear()
