"""Operator registry entries: output typing and shape inference.

Each operator maps input metas (and an optional argument) to output metas.
Failures raise ``ShapeInferenceError``; the builder re-raises them with the
name of the node being built, so operators pass an empty node name.

Shapes follow row-major activations: ``[n, d]`` for hidden states,
``[n, nh, dh]`` for per-head tensors, where ``n`` is usually the symbolic
token count.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol

from nn_graph.dim import Dim
from nn_graph.dtype import DType
from nn_graph.errors import ShapeInferenceError
from nn_graph.tensor import TensorMeta


class Operator(Protocol):
    def infer(self, inputs: list[TensorMeta], arg: Any = None) -> list[TensorMeta]:
        ...


def _fail(message: str) -> ShapeInferenceError:
    return ShapeInferenceError("", message)


def _expect_inputs(op: str, inputs: list[TensorMeta], *counts: int) -> None:
    if len(inputs) not in counts:
        expected = " or ".join(str(c) for c in counts)
        raise _fail(f"{op} expects {expected} inputs, got {len(inputs)}")


def _expect_ndim(op: str, what: str, meta: TensorMeta, ndim: int) -> None:
    if meta.ndim != ndim:
        raise _fail(f"{op}: {what} must be {ndim}-D, got {meta.shape_str()}")


def _expect_dim(op: str, what: str, actual: Dim, expected: Dim) -> None:
    if actual != expected:
        raise _fail(f"{op}: {what} is {actual}, expected {expected}")


def _expect_dtype(op: str, what: str, meta: TensorMeta, dtype: DType) -> None:
    if meta.dtype != dtype:
        raise _fail(f"{op}: {what} dtype is {meta.dtype.tag}, expected {dtype.tag}")


_INDEX_DTYPES = (DType.U32, DType.I32, DType.U64, DType.I64)


# ---------------------------------------------------------------------------
# Operators
# ---------------------------------------------------------------------------


class Embedding:
    """tokens[n], table[nvoc, d] (, pos[n], wpe[nctx, d]) -> x[n, d]."""

    def infer(self, inputs, arg=None):
        _expect_inputs("embedding", inputs, 2, 4)
        table, tokens = inputs[0], inputs[1]
        _expect_ndim("embedding", "table", table, 2)
        _expect_ndim("embedding", "tokens", tokens, 1)
        if tokens.dtype not in _INDEX_DTYPES:
            raise _fail(f"embedding: tokens must be integer, got {tokens.dtype.tag}")
        if len(inputs) == 4:
            wpe, pos = inputs[2], inputs[3]
            _expect_ndim("embedding", "wpe", wpe, 2)
            _expect_dim("embedding", "wpe width", wpe.shape[1], table.shape[1])
            _expect_dim("embedding", "positions", pos.shape[0], tokens.shape[0])
        return [TensorMeta(table.dtype, [tokens.shape[0], table.shape[1]])]


class RmsNorm:
    """x[n, d], scale[d] -> y[n, d]. ``arg`` is epsilon."""

    def infer(self, inputs, arg=None):
        _expect_inputs("rms-norm", inputs, 2)
        x, scale = inputs
        _expect_ndim("rms-norm", "scale", scale, 1)
        _expect_dim("rms-norm", "scale width", scale.shape[0], x.shape[-1])
        return [x]


class LayerNorm:
    """x[n, d], scale[d], bias[d] -> y[n, d]. ``arg`` is epsilon."""

    def infer(self, inputs, arg=None):
        _expect_inputs("layer-norm", inputs, 3)
        x, scale, bias = inputs
        for what, t in (("scale", scale), ("bias", bias)):
            _expect_ndim("layer-norm", what, t, 1)
            _expect_dim("layer-norm", f"{what} width", t.shape[0], x.shape[-1])
        return [x]


class Linear:
    """x[n, k], w[m, k] (, bias[m]) -> y[n, m]."""

    def infer(self, inputs, arg=None):
        _expect_inputs("linear", inputs, 2, 3)
        x, w = inputs[0], inputs[1]
        _expect_ndim("linear", "weight", w, 2)
        _expect_dim("linear", "reduction dim", x.shape[-1], w.shape[1])
        _expect_dtype("linear", "weight", w, x.dtype)
        if len(inputs) == 3:
            bias = inputs[2]
            _expect_ndim("linear", "bias", bias, 1)
            _expect_dim("linear", "bias width", bias.shape[0], w.shape[0])
        return [x.with_shape([*x.shape[:-1], w.shape[0]])]


@dataclass(frozen=True)
class SplitArg:
    axis: int
    parts: tuple[int, ...]


class Split:
    """x -> parts along ``axis``; ``arg`` is a SplitArg with relative part sizes."""

    def infer(self, inputs, arg=None):
        _expect_inputs("split", inputs, 1)
        if not isinstance(arg, SplitArg) or not arg.parts:
            raise _fail("split requires a SplitArg with at least one part")
        (x,) = inputs
        if x.ndim == 0:
            raise _fail("split: input must have at least one dim")
        if any(p <= 0 for p in arg.parts):
            raise _fail(f"split: parts must be positive, got {list(arg.parts)}")
        axis = arg.axis % x.ndim
        total = sum(arg.parts)
        dim = x.shape[axis]
        unit = dim // total
        if unit * total != dim:
            raise _fail(f"split: dim {dim} is not divisible into parts {list(arg.parts)}")
        outputs = []
        for part in arg.parts:
            shape = list(x.shape)
            shape[axis] = unit * part
            outputs.append(x.with_shape(shape))
        return outputs


class Rope:
    """x[n, nh*dh] or x[n, nh, dh], pos[n], sin[nctx, dh/2], cos[nctx, dh/2] -> x."""

    def infer(self, inputs, arg=None):
        _expect_inputs("rope", inputs, 4)
        x, pos, sin, cos = inputs
        _expect_ndim("rope", "pos", pos, 1)
        _expect_dim("rope", "positions", pos.shape[0], x.shape[0])
        if pos.dtype not in _INDEX_DTYPES:
            raise _fail(f"rope: positions must be integer, got {pos.dtype.tag}")
        for what, table in (("sin", sin), ("cos", cos)):
            _expect_ndim("rope", what, table, 2)
        if sin.shape != cos.shape:
            raise _fail(f"rope: sin {sin.shape_str()} and cos {cos.shape_str()} differ")
        dh = sin.shape[1] * 2
        if x.ndim == 3:
            _expect_dim("rope", "head dim", x.shape[2], dh)
        elif x.ndim == 2:
            width = x.shape[1]
            if width.is_constant and dh.is_constant and width.value % dh.value:
                raise _fail(f"rope: width {width} is not a multiple of head dim {dh}")
        else:
            raise _fail(f"rope: x must be 2-D or 3-D, got {x.shape_str()}")
        return [x]


@dataclass(frozen=True)
class AttentionArg:
    nh: int
    nkvh: int


class Attention:
    """q[n, nh*dh], k[n, nkvh*dh], v[n, nkvh*dh] -> o[n, nh*dh].

    ``arg`` is an AttentionArg with the head counts; 3-D ``[n, heads, dh]``
    inputs carry them in the shape instead.
    """

    def infer(self, inputs, arg=None):
        _expect_inputs("attention", inputs, 3)
        q, k, v = inputs
        if k.shape != v.shape:
            raise _fail(f"attention: k {k.shape_str()} and v {v.shape_str()} differ")
        _expect_dim("attention", "k seq", k.shape[0], q.shape[0])
        if q.ndim == 3 and k.ndim == 3:
            _expect_dim("attention", "head dim", k.shape[2], q.shape[2])
            nh, nkvh = q.shape[1], k.shape[1]
        elif q.ndim == 2 and k.ndim == 2:
            if not isinstance(arg, AttentionArg):
                raise _fail("attention on 2-D inputs requires an AttentionArg")
            nh, nkvh = Dim.of(arg.nh), Dim.of(arg.nkvh)
            _expect_dim("attention", "kv width", k.shape[1] * nh, q.shape[1] * nkvh)
        else:
            raise _fail(f"attention: unsupported ranks {q.shape_str()}, {k.shape_str()}")
        if nh.is_constant and nkvh.is_constant and nh.value % nkvh.value:
            raise _fail(f"attention: {nh} heads not divisible by {nkvh} kv heads")
        return [q]


class SwiGLU:
    """gate[n, di], up[n, di] -> y[n, di]."""

    def infer(self, inputs, arg=None):
        _expect_inputs("swiglu", inputs, 2)
        gate, up = inputs
        if gate.shape != up.shape:
            raise _fail(f"swiglu: gate {gate.shape_str()} and up {up.shape_str()} differ")
        _expect_dtype("swiglu", "up", up, gate.dtype)
        return [gate]


class GeLU:
    def infer(self, inputs, arg=None):
        _expect_inputs("gelu", inputs, 1)
        return [inputs[0]]


class Concat:
    """xs... -> y along ``arg`` (axis, default -1)."""

    def infer(self, inputs, arg=None):
        if not inputs:
            raise _fail("concat expects at least one input")
        axis = -1 if arg is None else arg
        first = inputs[0]
        if first.ndim == 0:
            raise _fail("concat: inputs must have at least one dim")
        axis %= first.ndim
        total = Dim.of(0)
        for t in inputs:
            if t.ndim != first.ndim:
                raise _fail(f"concat: rank mismatch {first.shape_str()} vs {t.shape_str()}")
            _expect_dtype("concat", "input", t, first.dtype)
            for i, (a, b) in enumerate(zip(t.shape, first.shape)):
                if i != axis:
                    _expect_dim("concat", f"dim {i}", a, b)
            total = total + t.shape[axis]
        shape = list(first.shape)
        shape[axis] = total
        return [first.with_shape(shape)]


BUILTIN_OPS: dict[str, Operator] = {
    "embedding": Embedding(),
    "rms-norm": RmsNorm(),
    "layer-norm": LayerNorm(),
    "attention": Attention(),
    "split": Split(),
    "swiglu": SwiGLU(),
    "gelu": GeLU(),
    "linear": Linear(),
    "rope": Rope(),
    "concat": Concat(),
}
