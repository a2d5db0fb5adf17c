"""Bind abstract edges to concrete tensors.

After shape variables are fixed, weight edges are matched against the tensor
container (dtype and shape must agree exactly) and activation edges are left
unassigned for a later placement pass.
"""

from __future__ import annotations

from typing import Iterable, Mapping

import numpy as np

from nn_graph.container import TensorContainer
from nn_graph.dim import DimLike
from nn_graph.dtype import DType
from nn_graph.errors import DTypeMismatch, ShapeMismatch, UnboundDimension
from nn_graph.tensor import UNASSIGNED, Edge, HostStorage, Tensor


def bind_edge(edge: Edge, container: TensorContainer, env: Mapping[str, DimLike]) -> Tensor:
    meta = edge.meta.substitute(env)
    if not meta.is_concrete:
        raise UnboundDimension(next(d for d in meta.shape if not d.is_constant), f"edge '{edge.name}'")
    if edge.external is None:
        return Tensor(meta, UNASSIGNED, edge.name)

    array = container[edge.external.item]
    try:
        actual = DType.from_numpy(array.dtype)
    except TypeError:
        raise DTypeMismatch(edge.name, meta.dtype, array.dtype) from None
    if actual != meta.dtype:
        raise DTypeMismatch(edge.name, meta.dtype, actual)
    expected_shape = meta.concrete_shape()
    if tuple(array.shape) != expected_shape:
        raise ShapeMismatch(edge.name, list(expected_shape), list(array.shape))
    return Tensor(meta, HostStorage(array), edge.name)


def bind_edges(
    edges: Iterable[Edge],
    container: TensorContainer,
    env: Mapping[str, DimLike],
) -> list[Tensor]:
    """Substitute ``env`` into every edge and attach weight storage."""
    return [bind_edge(edge, container, env) for edge in edges]


def sin_cos_tables(nctx: int, dh: int, theta: float = 1e4) -> tuple[np.ndarray, np.ndarray]:
    """RoPE tables of shape ``[nctx, dh // 2]`` (float32)."""
    i = np.arange(dh // 2, dtype=np.float32)
    freq = np.power(np.float32(theta), -(2 * i) / np.float32(dh))
    angles = np.arange(nctx, dtype=np.float32)[:, None] * freq[None, :]
    return np.sin(angles).astype(np.float32), np.cos(angles).astype(np.float32)


def insert_sin_cos(container: TensorContainer, nctx: int, dh: int, theta: float = 1e4) -> None:
    sin, cos = sin_cos_tables(nctx, dh, theta)
    container.insert("sin_table", sin)
    container.insert("cos_table", cos)
