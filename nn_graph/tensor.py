"""Tensor metadata, graph edges and tensor storage handles."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Mapping, Union

import numpy as np

from nn_graph.dim import Dim, DimLike
from nn_graph.dtype import DType
from nn_graph.errors import UnboundDimension


@dataclass(frozen=True)
class TensorMeta:
    """Element kind plus an ordered shape of (possibly symbolic) dimensions."""

    dtype: DType
    shape: tuple[Dim, ...]

    def __init__(self, dtype: DType, shape):
        object.__setattr__(self, "dtype", dtype)
        object.__setattr__(self, "shape", tuple(Dim.of(d) for d in shape))

    @property
    def ndim(self) -> int:
        return len(self.shape)

    @property
    def is_concrete(self) -> bool:
        return all(d.is_constant for d in self.shape)

    def free_vars(self) -> frozenset[str]:
        return frozenset().union(*(d.free_vars() for d in self.shape))

    def substitute(self, env: Mapping[str, DimLike]) -> TensorMeta:
        return TensorMeta(self.dtype, [d.substitute(env) for d in self.shape])

    def concrete_shape(self) -> tuple[int, ...]:
        try:
            return tuple(d.value for d in self.shape)
        except UnboundDimension as e:
            raise UnboundDimension(e.dim, f"shape {self.shape_str()}") from None

    def numel(self) -> int:
        n = 1
        for d in self.concrete_shape():
            n *= d
        return n

    def nbytes(self) -> int:
        return self.numel() * self.dtype.nbytes

    def with_shape(self, shape) -> TensorMeta:
        return TensorMeta(self.dtype, shape)

    def shape_str(self) -> str:
        return "[" + ", ".join(str(d) for d in self.shape) + "]"

    def __repr__(self) -> str:
        return f"TensorMeta({self.dtype.tag}, {self.shape_str()})"


@dataclass(frozen=True)
class External:
    """Reference to a named entry of the external tensor container."""

    name: str
    item: str


@dataclass
class Edge:
    """A tensor of the abstract graph. Weight edges carry ``external``."""

    name: str
    meta: TensorMeta
    external: External | None = None

    @property
    def is_weight(self) -> bool:
        return self.external is not None


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------


@dataclass
class HostStorage:
    """Host-mapped bytes backing a weight."""

    array: np.ndarray

    @property
    def ptr(self) -> int:
        return self.array.__array_interface__["data"][0]

    @property
    def nbytes(self) -> int:
        return self.array.nbytes

    def as_bytes(self) -> np.ndarray:
        return np.ascontiguousarray(self.array).reshape(-1).view(np.uint8)


@dataclass(frozen=True)
class DeviceRange:
    """Byte range inside a packed device buffer."""

    offset: int
    length: int

    @property
    def end(self) -> int:
        return self.offset + self.length

    def as_range(self) -> range:
        return range(self.offset, self.end)


class _Unassigned:
    """Activation storage that a later pass will place."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNASSIGNED"


UNASSIGNED = _Unassigned()

Storage = Union[HostStorage, DeviceRange, _Unassigned]


@dataclass
class Tensor:
    meta: TensorMeta
    storage: Storage = field(default=UNASSIGNED)
    name: str = ""

    @property
    def dtype(self) -> DType:
        return self.meta.dtype

    @property
    def shape(self) -> tuple[int, ...]:
        return self.meta.concrete_shape()

    @property
    def is_weight(self) -> bool:
        return isinstance(self.storage, HostStorage)

    def with_storage(self, storage: Storage) -> Tensor:
        return Tensor(self.meta, storage, self.name)
