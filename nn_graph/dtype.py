"""Fixed-width element kinds used by tensor metadata."""

from __future__ import annotations

from enum import Enum

import ml_dtypes
import numpy as np


class DType(Enum):
    U8 = ("U8", 1)
    I8 = ("I8", 1)
    U16 = ("U16", 2)
    I16 = ("I16", 2)
    U32 = ("U32", 4)
    I32 = ("I32", 4)
    U64 = ("U64", 8)
    I64 = ("I64", 8)
    F16 = ("F16", 2)
    BF16 = ("BF16", 2)
    F32 = ("F32", 4)
    F64 = ("F64", 8)

    def __init__(self, tag: str, nbytes: int):
        self.tag = tag
        self.nbytes = nbytes

    def __repr__(self) -> str:
        return f"DType.{self.name}"

    @property
    def numpy_dtype(self) -> np.dtype:
        return _NUMPY_DTYPES[self]

    @classmethod
    def parse(cls, name: str) -> DType:
        """Parse a container dtype name ("F32", "bf16", "float16", ...)."""
        key = name.strip().upper()
        if key in cls.__members__:
            return cls[key]
        try:
            return cls.from_numpy(np.dtype(name.lower()))
        except TypeError:
            raise ValueError(f"Unknown dtype name: {name!r}") from None

    @classmethod
    def from_numpy(cls, dtype) -> DType:
        dtype = np.dtype(dtype)
        for member, np_dtype in _NUMPY_DTYPES.items():
            if np_dtype == dtype:
                return member
        raise TypeError(f"Unsupported numpy dtype: {dtype}")


_NUMPY_DTYPES: dict[DType, np.dtype] = {
    DType.U8: np.dtype(np.uint8),
    DType.I8: np.dtype(np.int8),
    DType.U16: np.dtype(np.uint16),
    DType.I16: np.dtype(np.int16),
    DType.U32: np.dtype(np.uint32),
    DType.I32: np.dtype(np.int32),
    DType.U64: np.dtype(np.uint64),
    DType.I64: np.dtype(np.int64),
    DType.F16: np.dtype(np.float16),
    DType.BF16: np.dtype(ml_dtypes.bfloat16),
    DType.F32: np.dtype(np.float32),
    DType.F64: np.dtype(np.float64),
}
