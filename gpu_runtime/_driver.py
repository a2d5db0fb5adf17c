"""Driver bindings: CuPy for the runtime layer, cuda-python for the driver API.

Every driver / NVRTC call goes through ``check``, which unpacks the
``(status, *values)`` tuples returned by cuda-python and raises DriverError on
failure.
"""

from __future__ import annotations

from contextlib import contextmanager

from gpu_runtime.errors import DriverError, MappingError, OutOfMemory

try:
    import cupy as cp

    HAS_CUPY = True
except ImportError:
    cp = None
    HAS_CUPY = False

try:
    from cuda.bindings import driver, nvrtc

    HAS_CUDA_PYTHON = True
except ImportError:
    driver = None
    nvrtc = None
    HAS_CUDA_PYTHON = False


def available() -> bool:
    return HAS_CUPY and HAS_CUDA_PYTHON


def _error_name(status) -> str:
    if isinstance(status, driver.CUresult):
        err, name = driver.cuGetErrorName(status)
        if err == driver.CUresult.CUDA_SUCCESS:
            return name.decode()
        return status.name
    if isinstance(status, nvrtc.nvrtcResult):
        err, name = nvrtc.nvrtcGetErrorString(status)
        if err == nvrtc.nvrtcResult.NVRTC_SUCCESS:
            return name.decode()
        return status.name
    return str(status)


def _is_success(status) -> bool:
    if isinstance(status, driver.CUresult):
        return status == driver.CUresult.CUDA_SUCCESS
    return status == nvrtc.nvrtcResult.NVRTC_SUCCESS


def raise_for(status, call: str):
    name = _error_name(status)
    code = int(status)
    if isinstance(status, driver.CUresult):
        if status == driver.CUresult.CUDA_ERROR_OUT_OF_MEMORY:
            raise OutOfMemory(code, name, call)
        if status == driver.CUresult.CUDA_ERROR_ALREADY_MAPPED:
            raise MappingError(code, name, call)
    raise DriverError(code, name, call)


def check(result, call: str = ""):
    """Unwrap a cuda-python result tuple; return ``None``, one value, or a tuple."""
    status, *values = result
    if not _is_success(status):
        raise_for(status, call)
    if not values:
        return None
    if len(values) == 1:
        return values[0]
    return tuple(values)


@contextmanager
def cupy_call(call: str):
    """Re-raise CuPy allocation and runtime failures as OutOfMemory / DriverError."""
    try:
        yield
    except cp.cuda.memory.OutOfMemoryError as e:
        status = driver.CUresult.CUDA_ERROR_OUT_OF_MEMORY
        raise OutOfMemory(int(status), status.name, call, str(e)) from e
    except cp.cuda.runtime.CUDARuntimeError as e:
        name = str(e).split(":", 1)[0]
        if e.status == cp.cuda.runtime.errorMemoryAllocation:
            raise OutOfMemory(e.status, name, call, str(e)) from e
        raise DriverError(e.status, name, call, str(e)) from e
