"""Read-only tensor container backed by a safetensors file."""

from __future__ import annotations

import logging
from typing import Iterator, Mapping

import numpy as np

from nn_graph.dtype import DType
from nn_graph.tensor import TensorMeta

logger = logging.getLogger(__name__)


class TensorContainer:
    """Tensors indexed by name, yielding ``(dtype, shape, host bytes)``.

    Arrays are kept for the container's lifetime and returned by reference, so
    every lookup of the same name yields the same host pointer.
    """

    def __init__(self, tensors: Mapping[str, np.ndarray] | None = None,
                 metadata: Mapping[str, str] | None = None):
        self._tensors: dict[str, np.ndarray] = {}
        for name, array in (tensors or {}).items():
            self._tensors[name] = np.ascontiguousarray(array)
        self.metadata: dict[str, str] = dict(metadata or {})

    @classmethod
    def open(cls, path: str) -> TensorContainer:
        from safetensors import safe_open

        with safe_open(path, framework="numpy") as f:
            metadata = f.metadata() or {}
            tensors = {name: f.get_tensor(name) for name in f.keys()}
        logger.info("opened %s: %d tensors", path, len(tensors))
        return cls(tensors, metadata)

    def __contains__(self, name: str) -> bool:
        return name in self._tensors

    def __getitem__(self, name: str) -> np.ndarray:
        try:
            return self._tensors[name]
        except KeyError:
            raise KeyError(f"Tensor '{name}' not found in container") from None

    def __len__(self) -> int:
        return len(self._tensors)

    def keys(self) -> Iterator[str]:
        return iter(self._tensors)

    def meta(self, name: str) -> TensorMeta:
        array = self[name]
        return TensorMeta(DType.from_numpy(array.dtype), array.shape)

    def insert(self, name: str, array: np.ndarray) -> None:
        """Add a synthesized tensor; existing names are never replaced."""
        if name in self._tensors:
            raise KeyError(f"Tensor '{name}' already exists in container")
        self._tensors[name] = np.ascontiguousarray(array)

    def get_meta(self, key: str, default=None, cast=int):
        """Typed lookup in the file's string metadata."""
        value = self.metadata.get(key)
        if value is None:
            if default is None:
                raise KeyError(f"Metadata '{key}' not found")
            return default
        return cast(value)
