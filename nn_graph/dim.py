"""Symbolic dimensions.

A dimension is a small expression tree over named shape variables. Trees are
normalized on construction (constants folded, like terms combined, operands
sorted), so two dimensions that denote the same affine expression compare
equal structurally:

    >>> n = Dim.var("n")
    >>> (n * 2 + 1) == (1 + 2 * n)
    True
    >>> (n * 2 + 1).substitute({"n": 5})
    Dim(11)
"""

from __future__ import annotations

import operator
from dataclasses import dataclass
from typing import Mapping, Union

from nn_graph.errors import UnboundDimension

DimLike = Union["Dim", int]


class Dim:
    """Base class of the dimension expression tree."""

    __slots__ = ()

    @staticmethod
    def var(name: str) -> Dim:
        return Var(name)

    @staticmethod
    def of(value: DimLike) -> Dim:
        if isinstance(value, Dim):
            return value
        if isinstance(value, bool):
            raise TypeError(f"Cannot build a dimension from {value!r}")
        try:
            return Const(operator.index(value))
        except TypeError:
            raise TypeError(f"Cannot build a dimension from {value!r}") from None

    # -- algebra -----------------------------------------------------------

    def __add__(self, other: DimLike) -> Dim:
        return _sum((self, Dim.of(other)))

    def __radd__(self, other: DimLike) -> Dim:
        return _sum((Dim.of(other), self))

    def __mul__(self, other: DimLike) -> Dim:
        return _product((self, Dim.of(other)))

    def __rmul__(self, other: DimLike) -> Dim:
        return _product((Dim.of(other), self))

    def __floordiv__(self, other: DimLike) -> Dim:
        return _quotient(self, Dim.of(other))

    def __rfloordiv__(self, other: DimLike) -> Dim:
        return _quotient(Dim.of(other), self)

    # -- evaluation --------------------------------------------------------

    def substitute(self, env: Mapping[str, DimLike]) -> Dim:
        """Replace every variable found in ``env``; the rest stays symbolic."""
        raise NotImplementedError

    def free_vars(self) -> frozenset[str]:
        raise NotImplementedError

    @property
    def is_constant(self) -> bool:
        return isinstance(self, Const)

    @property
    def value(self) -> int:
        """Concrete value; raises UnboundDimension while variables remain."""
        if isinstance(self, Const):
            return self.value_
        raise UnboundDimension(self)

    def __repr__(self) -> str:
        return f"Dim({self})"


@dataclass(frozen=True, repr=False)
class Const(Dim):
    value_: int

    def substitute(self, env):
        return self

    def free_vars(self):
        return frozenset()

    def __str__(self) -> str:
        return str(self.value_)


@dataclass(frozen=True, repr=False)
class Var(Dim):
    name: str

    def substitute(self, env):
        if self.name in env:
            return Dim.of(env[self.name])
        return self

    def free_vars(self):
        return frozenset((self.name,))

    def __str__(self) -> str:
        return self.name


@dataclass(frozen=True, repr=False)
class Sum(Dim):
    terms: tuple[Dim, ...]

    def substitute(self, env):
        return _sum(t.substitute(env) for t in self.terms)

    def free_vars(self):
        return frozenset().union(*(t.free_vars() for t in self.terms))

    def __str__(self) -> str:
        return "(" + " + ".join(str(t) for t in self.terms) + ")"


@dataclass(frozen=True, repr=False)
class Product(Dim):
    factors: tuple[Dim, ...]

    def substitute(self, env):
        return _product(f.substitute(env) for f in self.factors)

    def free_vars(self):
        return frozenset().union(*(f.free_vars() for f in self.factors))

    def __str__(self) -> str:
        return "*".join(str(f) for f in self.factors)


@dataclass(frozen=True, repr=False)
class Quotient(Dim):
    """Floor division; only produced when it cannot be folded."""

    numerator: Dim
    divisor: Dim

    def substitute(self, env):
        return _quotient(self.numerator.substitute(env), self.divisor.substitute(env))

    def free_vars(self):
        return self.numerator.free_vars() | self.divisor.free_vars()

    def __str__(self) -> str:
        return f"{self.numerator} / {self.divisor}"


# ---------------------------------------------------------------------------
# Normalizing constructors
# ---------------------------------------------------------------------------


def _split_coefficient(term: Dim) -> tuple[int, Dim | None]:
    """Split ``c*x`` into ``(c, x)``; a constant gives ``(c, None)``."""
    if isinstance(term, Const):
        return term.value_, None
    if isinstance(term, Product) and isinstance(term.factors[0], Const):
        rest = term.factors[1:]
        base = rest[0] if len(rest) == 1 else Product(rest)
        return term.factors[0].value_, base
    return 1, term


def _sum(terms) -> Dim:
    flat: list[Dim] = []
    for t in terms:
        if isinstance(t, Sum):
            flat.extend(t.terms)
        else:
            flat.append(t)

    constant = 0
    coefficients: dict[Dim, int] = {}
    for t in flat:
        coef, base = _split_coefficient(t)
        if base is None:
            constant += coef
        else:
            coefficients[base] = coefficients.get(base, 0) + coef

    out: list[Dim] = []
    for base in sorted(coefficients, key=str):
        coef = coefficients[base]
        if coef == 0:
            continue
        out.append(base if coef == 1 else _product((Const(coef), base)))
    if constant or not out:
        out.append(Const(constant))

    if len(out) == 1:
        return out[0]
    return Sum(tuple(out))


def _product(factors) -> Dim:
    flat: list[Dim] = []
    for f in factors:
        if isinstance(f, Product):
            flat.extend(f.factors)
        else:
            flat.append(f)

    constant = 1
    symbolic: list[Dim] = []
    for f in flat:
        if isinstance(f, Const):
            constant *= f.value_
        else:
            symbolic.append(f)

    if constant == 0 or not symbolic:
        return Const(constant)

    # c * (a + b) -> c*a + c*b keeps affine forms comparable
    if len(symbolic) == 1 and isinstance(symbolic[0], Sum):
        return _sum(_product((Const(constant), t)) for t in symbolic[0].terms)

    symbolic.sort(key=str)
    if constant == 1:
        return symbolic[0] if len(symbolic) == 1 else Product(tuple(symbolic))
    return Product((Const(constant), *symbolic))


def _quotient(numerator: Dim, divisor: Dim) -> Dim:
    if isinstance(divisor, Const):
        if divisor.value_ == 0:
            raise ZeroDivisionError(f"{numerator} / 0")
        if divisor.value_ == 1:
            return numerator
        if isinstance(numerator, Const):
            return Const(numerator.value_ // divisor.value_)
        coef, base = _split_coefficient(numerator)
        if base is not None and coef % divisor.value_ == 0:
            return _product((Const(coef // divisor.value_), base))
    if numerator == divisor:
        return Const(1)
    return Quotient(numerator, divisor)


def substitute_all(dims, env: Mapping[str, DimLike]) -> tuple[Dim, ...]:
    return tuple(Dim.of(d).substitute(env) for d in dims)
