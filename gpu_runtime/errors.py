"""Errors raised by the device runtime.

Driver failures keep the original numeric code and symbolic name; nothing in
this package retries a failed device operation.
"""

from __future__ import annotations


class GpuError(RuntimeError):
    """Base class for every error raised by gpu_runtime."""


class NoDevice(GpuError):
    def __init__(self, reason: str = "no compatible GPU found"):
        self.reason = reason
        super().__init__(reason)


class DriverError(GpuError):
    """A driver / NVRTC call returned a non-success code."""

    def __init__(self, code: int, name: str = "", call: str = "", detail: str = ""):
        self.code = int(code)
        self.name = name
        self.call = call
        self.detail = detail
        msg = f"{call or 'driver call'} failed: {name or 'error'} ({self.code})"
        if detail:
            msg += f": {detail}"
        super().__init__(msg)


class OutOfMemory(DriverError):
    pass


class MappingError(DriverError):
    """Virtual-memory map/unmap rejected (alignment, overlap, not mapped)."""


class JitCompileError(GpuError):
    def __init__(self, log: str, name: str = ""):
        self.log = log
        self.name = name
        label = f" '{name}'" if name else ""
        super().__init__(f"NVRTC compilation of{label} failed:\n{log}")


class SymbolNotFound(GpuError, KeyError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Kernel '{name}' not found in module")

    def __str__(self) -> str:
        return self.args[0]


class InvalidLaunchConfig(GpuError, ValueError):
    pass


class GraphError(GpuError):
    """Misuse of a device graph: foreign dependency, use after destroy."""


class StagingExhausted(GpuError):
    """No staging buffer can hold a request; handled inside the loader."""
