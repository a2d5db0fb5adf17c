"""Shared fixtures and helpers for graph-build and device runtime tests."""

import numpy as np
import pytest

from nn_graph.dtype import DType
from nn_graph.graph import ModelDesc
from nn_graph.llama import LLaMAConfig, llama, llama_inputs


@pytest.fixture(scope="session")
def ctx():
    """Session-scoped context on device 0."""
    from gpu_runtime import Context

    return Context(0)


@pytest.fixture
def stream(ctx):
    s = ctx.stream()
    yield s
    s.synchronize()


@pytest.fixture
def rng():
    return np.random.default_rng(0)


TINY = {"nvoc": 32, "d": 16, "nh": 4, "nkvh": 2, "dh": 4, "di": 24, "nctx": 8}


def tiny_llama(nblk: int = 1, dtype: DType = DType.F32) -> ModelDesc:
    """LLaMA description small enough to bind against random weights."""
    return llama(LLaMAConfig(nblk=nblk, **TINY), dtype)


def tiny_inputs():
    return llama_inputs()


def tiny_weights(model: ModelDesc, rng) -> dict:
    """Random arrays for every weight of ``model`` keyed by container name."""
    out = {}
    for w in model.weights:
        shape = w.meta.concrete_shape()
        out[w.item or w.name] = rng.standard_normal(shape).astype(w.meta.dtype.numpy_dtype)
    return out
