"""Tests for symbolic dimensions, dtypes and tensor metadata."""

import numpy as np
import pytest

from nn_graph.dim import Const, Dim, Quotient, Var
from nn_graph.dtype import DType
from nn_graph.errors import UnboundDimension
from nn_graph.tensor import TensorMeta

# ---------------------------------------------------------------------------
# 1. Dim algebra
# ---------------------------------------------------------------------------


class TestDim:
    def test_of_int(self):
        assert Dim.of(5) == Const(5)
        assert Dim.of(np.int64(7)) == Const(7)

    def test_of_rejects_bool_and_float(self):
        with pytest.raises(TypeError):
            Dim.of(True)
        with pytest.raises(TypeError):
            Dim.of(1.5)

    def test_constant_folding(self):
        assert Dim.of(3) + 4 == Const(7)
        assert Dim.of(3) * 4 == Const(12)
        assert Dim.of(13) // 4 == Const(3)

    def test_commutative_forms_are_equal(self):
        n = Dim.var("n")
        m = Dim.var("m")
        assert n * 2 + 1 == 1 + 2 * n
        assert n + m == m + n
        assert n * m == m * n

    def test_like_terms_combine(self):
        n = Dim.var("n")
        assert n + n == 2 * n
        assert n * 3 + n * (-3) == Const(0)

    def test_distribute_constant(self):
        n = Dim.var("n")
        assert (n + 1) * 2 == 2 * n + 2

    def test_division_by_one_and_self(self):
        n = Dim.var("n")
        assert n // 1 == n
        assert n // n == Const(1)

    def test_division_of_multiple(self):
        n = Dim.var("n")
        assert (n * 8) // 4 == n * 2

    def test_division_symbolic_stays_quotient(self):
        n = Dim.var("n")
        assert isinstance(n // 3, Quotient)
        assert (n // 3).substitute({"n": 10}) == Const(3)

    def test_division_by_zero(self):
        with pytest.raises(ZeroDivisionError):
            Dim.var("n") // 0

    def test_substitute_partial(self):
        n, m = Dim.var("n"), Dim.var("m")
        expr = n * m + 3
        partial = expr.substitute({"n": 2})
        assert partial == 2 * m + 3
        assert partial.free_vars() == frozenset({"m"})
        assert partial.substitute({"m": 5}).value == 13

    def test_value_unbound(self):
        with pytest.raises(UnboundDimension):
            _ = (Dim.var("n") + 1).value

    def test_is_constant(self):
        assert Dim.of(4).is_constant
        assert not Dim.var("n").is_constant

    def test_structural_hash(self):
        n = Dim.var("n")
        assert len({n + 1, 1 + n, Var("n") + Const(1)}) == 1

    def test_repr(self):
        assert repr(Dim.of(11)) == "Dim(11)"
        assert "n" in repr(Dim.var("n") * 2)


# ---------------------------------------------------------------------------
# 2. DType
# ---------------------------------------------------------------------------


class TestDType:
    def test_sizes(self):
        assert DType.U8.nbytes == 1
        assert DType.BF16.nbytes == 2
        assert DType.F32.nbytes == 4
        assert DType.I64.nbytes == 8

    def test_parse_names(self):
        assert DType.parse("F32") is DType.F32
        assert DType.parse("bf16") is DType.BF16
        assert DType.parse("float16") is DType.F16

    def test_parse_unknown(self):
        with pytest.raises(ValueError):
            DType.parse("F128X")

    def test_from_numpy(self):
        assert DType.from_numpy(np.float32) is DType.F32
        assert DType.from_numpy(np.dtype("uint32")) is DType.U32

    def test_from_numpy_unsupported(self):
        with pytest.raises(TypeError):
            DType.from_numpy(np.complex64)

    def test_bf16_roundtrip(self):
        assert DType.from_numpy(DType.BF16.numpy_dtype) is DType.BF16


# ---------------------------------------------------------------------------
# 3. TensorMeta
# ---------------------------------------------------------------------------


class TestTensorMeta:
    def test_concrete(self):
        meta = TensorMeta(DType.F16, [4, 8])
        assert meta.is_concrete
        assert meta.concrete_shape() == (4, 8)
        assert meta.numel() == 32
        assert meta.nbytes() == 64

    def test_symbolic(self):
        meta = TensorMeta(DType.F32, [Dim.var("n"), 16])
        assert not meta.is_concrete
        assert meta.free_vars() == frozenset({"n"})
        with pytest.raises(UnboundDimension):
            meta.nbytes()
        assert meta.substitute({"n": 3}).nbytes() == 3 * 16 * 4

    def test_equality_is_structural(self):
        n = Dim.var("n")
        assert TensorMeta(DType.F32, [n * 2, 4]) == TensorMeta(DType.F32, [2 * n, 4])
        assert TensorMeta(DType.F32, [4]) != TensorMeta(DType.F16, [4])

    def test_shape_str(self):
        assert TensorMeta(DType.F32, [Dim.var("n"), 16]).shape_str() == "[n, 16]"
