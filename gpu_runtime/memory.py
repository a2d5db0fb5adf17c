"""Device memory: eager allocations, byte slices and virtual-memory mappings.

Two allocation paths:

* eager -- ``Context.malloc`` returns a ``DevMem`` backed by the CuPy memory
  pool; the bytes return to the pool when the ``DevMem`` is released;
* virtual -- ``VirMem`` reserves address space, ``MemProp.create`` allocates
  a ``PhysMem`` block, ``VirMem.map`` binds it and ``VirMem.unmap`` hands the
  block back so it can be mapped elsewhere.

Every device range is exposed as a ``DevSlice``: a plain ``(address,
length)`` view that keeps its owner alive.

The free copy functions and the virtual-memory calls act on the current
context; run them inside ``with ctx:``.
"""

from __future__ import annotations

import logging
import weakref
from typing import Any

import numpy as np

from gpu_runtime._driver import check, cp, cupy_call, driver
from gpu_runtime.errors import MappingError

logger = logging.getLogger(__name__)


class DevSlice:
    """Contiguous device byte range ``[ptr, ptr + nbytes)``."""

    __slots__ = ("ptr", "nbytes", "_owner")

    def __init__(self, ptr: int, nbytes: int, owner: Any = None):
        self.ptr = int(ptr)
        self.nbytes = int(nbytes)
        self._owner = owner

    def __len__(self) -> int:
        return self.nbytes

    def __getitem__(self, key) -> DevSlice:
        if isinstance(key, range):
            key = slice(key.start, key.stop, key.step)
        if not isinstance(key, slice):
            raise TypeError("DevSlice only supports byte-range slicing")
        start, stop, step = key.indices(self.nbytes)
        if step != 1:
            raise ValueError("DevSlice slices must be contiguous")
        owner = self._owner if self._owner is not None else self
        return DevSlice(self.ptr + start, max(stop - start, 0), owner)

    def __repr__(self) -> str:
        return f"DevSlice({self.ptr:#x}, {self.nbytes})"


class DevMem(DevSlice):
    """Owned eager allocation of ``count`` elements of ``dtype``."""

    __slots__ = ("dtype", "count", "_memptr")

    def __init__(self, count: int, dtype=np.uint8):
        dtype = np.dtype(dtype)
        nbytes = int(count) * dtype.itemsize
        with cupy_call("cupy.cuda.memory.alloc"):
            memptr = cp.cuda.memory.alloc(nbytes)
        super().__init__(memptr.ptr, nbytes)
        self.dtype = dtype
        self.count = int(count)
        self._memptr = memptr

    def free(self) -> None:
        self._memptr = None
        self.ptr = 0
        self.nbytes = 0

    def __repr__(self) -> str:
        return f"DevMem({self.ptr:#x}, {self.count} x {self.dtype})"


def device_ptr(obj) -> int:
    """Device address of a DevSlice, CuPy array / MemoryPointer, or int."""
    if isinstance(obj, DevSlice):
        return obj.ptr
    if isinstance(obj, int):
        return obj
    data = getattr(obj, "data", None)
    if data is not None and hasattr(data, "ptr"):
        return int(data.ptr)
    if hasattr(obj, "ptr"):
        return int(obj.ptr)
    raise TypeError(f"Cannot take a device address of {type(obj).__name__}")


def device_nbytes(obj) -> int:
    if isinstance(obj, DevSlice):
        return obj.nbytes
    if hasattr(obj, "nbytes"):
        return int(obj.nbytes)
    if hasattr(obj, "mem"):
        return int(obj.mem.size) - int(obj.ptr - obj.mem.ptr)
    raise TypeError(f"Cannot take a device length of {type(obj).__name__}")


def host_view(host: np.ndarray) -> np.ndarray:
    """Flat uint8 view of a C-contiguous host array."""
    if not host.flags.c_contiguous:
        raise ValueError("Host buffer must be C-contiguous")
    return host.reshape(-1).view(np.uint8)


def _check_same_size(dst_len: int, src_len: int) -> None:
    if dst_len != src_len:
        raise ValueError(f"Copy size mismatch: destination {dst_len} bytes, source {src_len} bytes")


# ---------------------------------------------------------------------------
# Synchronous copies
# ---------------------------------------------------------------------------


def memcpy_h2d(dst, host: np.ndarray) -> None:
    src = host_view(host)
    _check_same_size(device_nbytes(dst), src.nbytes)
    if src.nbytes:
        check(driver.cuMemcpyHtoD(device_ptr(dst), src.ctypes.data, src.nbytes), "cuMemcpyHtoD")


def memcpy_d2h(host: np.ndarray, src) -> None:
    dst = host_view(host)
    if not dst.flags.writeable:
        raise ValueError("Host destination is read-only")
    _check_same_size(dst.nbytes, device_nbytes(src))
    if dst.nbytes:
        check(driver.cuMemcpyDtoH(dst.ctypes.data, device_ptr(src), dst.nbytes), "cuMemcpyDtoH")


def memcpy_d2d(dst, src) -> None:
    n = device_nbytes(dst)
    _check_same_size(n, device_nbytes(src))
    if n:
        check(driver.cuMemcpyDtoD(device_ptr(dst), device_ptr(src), n), "cuMemcpyDtoD")


# ---------------------------------------------------------------------------
# Virtual memory
# ---------------------------------------------------------------------------


def _mapping_error(code_name: str, call: str, detail: str) -> MappingError:
    code = getattr(driver.CUresult, code_name)
    return MappingError(int(code), code_name, call, detail)


class MemProp:
    """Physical allocation properties for one device."""

    def __init__(self, ordinal: int):
        self.ordinal = ordinal
        prop = driver.CUmemAllocationProp()
        prop.type = driver.CUmemAllocationType.CU_MEM_ALLOCATION_TYPE_PINNED
        prop.location.type = driver.CUmemLocationType.CU_MEM_LOCATION_TYPE_DEVICE
        prop.location.id = ordinal
        self._prop = prop
        self._granularity: int | None = None

    def granularity_minimum(self) -> int:
        if self._granularity is None:
            self._granularity = int(check(
                driver.cuMemGetAllocationGranularity(
                    self._prop,
                    driver.CUmemAllocationGranularity_flags.CU_MEM_ALLOC_GRANULARITY_MINIMUM,
                ),
                "cuMemGetAllocationGranularity",
            ))
        return self._granularity

    def create(self, size: int) -> PhysMem:
        granularity = self.granularity_minimum()
        if size <= 0 or size % granularity:
            raise _mapping_error(
                "CUDA_ERROR_INVALID_VALUE", "cuMemCreate",
                f"size {size} is not a positive multiple of granularity {granularity}",
            )
        handle = check(driver.cuMemCreate(size, self._prop, 0), "cuMemCreate")
        return PhysMem(handle, size, self)


def _release_phys(handle) -> None:
    driver.cuMemRelease(handle)


class PhysMem:
    """Opaque physical allocation; released when the last reference goes away."""

    def __init__(self, handle, size: int, prop: MemProp):
        self.handle = handle
        self.size = size
        self.prop = prop
        self._finalizer = weakref.finalize(self, _release_phys, handle)
        self._finalizer.atexit = False

    def release(self) -> None:
        self._finalizer()

    def __repr__(self) -> str:
        return f"PhysMem({self.size} bytes, device {self.prop.ordinal})"


def _free_address_range(ptr: int, size: int, mappings: dict) -> None:
    for offset, phys in list(mappings.items()):
        driver.cuMemUnmap(driver.CUdeviceptr(ptr + offset), phys.size)
    mappings.clear()
    driver.cuMemAddressFree(driver.CUdeviceptr(ptr), size)


class VirMem:
    """Reserved device address range with no backing until mapped.

    Each virtual byte is bound to at most one physical block. Callers must
    make sure no kernel or graph touching a range is in flight when it is
    unmapped.
    """

    def __init__(self, size: int, flags: int = 0, prop: MemProp | None = None):
        self.prop = prop or MemProp(0)
        granularity = self.prop.granularity_minimum()
        if size <= 0 or size % granularity:
            raise _mapping_error(
                "CUDA_ERROR_INVALID_VALUE", "cuMemAddressReserve",
                f"size {size} is not a positive multiple of granularity {granularity}",
            )
        self.size = size
        self.flags = flags
        self.ptr = int(check(driver.cuMemAddressReserve(size, 0, 0, flags), "cuMemAddressReserve"))
        self._mappings: dict[int, PhysMem] = {}
        self._finalizer = weakref.finalize(self, _free_address_range, self.ptr, size, self._mappings)
        self._finalizer.atexit = False
        logger.debug("reserved %d bytes at %#x", size, self.ptr)

    def _overlaps(self, offset: int, length: int) -> bool:
        end = offset + length
        return any(o < end and offset < o + p.size for o, p in self._mappings.items())

    def is_mapped(self, offset: int = 0, length: int | None = None) -> bool:
        length = self.size - offset if length is None else length
        covered = offset
        for o in sorted(self._mappings):
            if o > covered:
                break
            covered = max(covered, o + self._mappings[o].size)
        return covered >= offset + length

    def map(self, offset: int, phys: PhysMem) -> DevSlice:
        granularity = self.prop.granularity_minimum()
        if offset % granularity or phys.size % granularity:
            raise _mapping_error(
                "CUDA_ERROR_INVALID_VALUE", "cuMemMap",
                f"offset {offset} / size {phys.size} not aligned to {granularity}",
            )
        if offset < 0 or offset + phys.size > self.size:
            raise _mapping_error(
                "CUDA_ERROR_INVALID_VALUE", "cuMemMap",
                f"[{offset}, {offset + phys.size}) exceeds reservation of {self.size} bytes",
            )
        if self._overlaps(offset, phys.size):
            raise _mapping_error(
                "CUDA_ERROR_ALREADY_MAPPED", "cuMemMap",
                f"[{offset}, {offset + phys.size}) is already mapped",
            )

        addr = driver.CUdeviceptr(self.ptr + offset)
        check(driver.cuMemMap(addr, phys.size, 0, phys.handle, 0), "cuMemMap")
        desc = driver.CUmemAccessDesc()
        desc.location.type = driver.CUmemLocationType.CU_MEM_LOCATION_TYPE_DEVICE
        desc.location.id = self.prop.ordinal
        desc.flags = driver.CUmemAccess_flags.CU_MEM_ACCESS_FLAGS_PROT_READWRITE
        try:
            check(driver.cuMemSetAccess(addr, phys.size, [desc], 1), "cuMemSetAccess")
        except Exception:
            driver.cuMemUnmap(addr, phys.size)
            raise
        self._mappings[offset] = phys
        return DevSlice(self.ptr + offset, phys.size, self)

    def unmap(self, offset: int) -> PhysMem:
        phys = self._mappings.get(offset)
        if phys is None:
            raise _mapping_error("CUDA_ERROR_NOT_MAPPED", "cuMemUnmap", f"nothing mapped at offset {offset}")
        check(driver.cuMemUnmap(driver.CUdeviceptr(self.ptr + offset), phys.size), "cuMemUnmap")
        del self._mappings[offset]
        return phys

    def release(self) -> None:
        """Unmap every block and free the address range."""
        self._finalizer()

    def __repr__(self) -> str:
        return f"VirMem({self.ptr:#x}, {self.size} bytes, {len(self._mappings)} mapped)"
