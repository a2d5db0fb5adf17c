"""Build-time errors raised while assembling and binding the abstract graph."""

from __future__ import annotations


class GraphBuildError(ValueError):
    """Base class for every error raised by nn_graph."""


class OperatorUnknown(GraphBuildError):
    def __init__(self, name: str, node_name: str | None = None):
        self.name = name
        self.node_name = node_name
        where = f" (node '{node_name}')" if node_name else ""
        super().__init__(f"Unknown operator '{name}'{where}")


class ShapeInferenceError(GraphBuildError):
    """Operator could not type its outputs; carries the offending node name."""

    def __init__(self, node_name: str, message: str):
        self.node_name = node_name
        self.message = message
        super().__init__(f"Shape inference failed at node '{node_name}': {message}")


class ShapeMismatch(GraphBuildError):
    def __init__(self, edge_name: str, expected, actual):
        self.edge_name = edge_name
        self.expected = expected
        self.actual = actual
        super().__init__(f"Shape mismatch for '{edge_name}': expected {expected}, got {actual}")


class DTypeMismatch(GraphBuildError):
    def __init__(self, edge_name: str, expected=None, actual=None):
        self.edge_name = edge_name
        self.expected = expected
        self.actual = actual
        super().__init__(f"DType mismatch for '{edge_name}': expected {expected}, got {actual}")


class UnboundDimension(GraphBuildError):
    """A symbolic dimension was used where a concrete value is required."""

    def __init__(self, dim, context: str = ""):
        self.dim = dim
        suffix = f" in {context}" if context else ""
        super().__init__(f"Dimension {dim} still has free variables{suffix}")


class PlannerAliasLenMismatch(GraphBuildError):
    """The same host pointer was submitted twice with different lengths."""

    def __init__(self, ptr: int, existing: int, requested: int, name: str | None = None):
        self.ptr = ptr
        self.existing = existing
        self.requested = requested
        self.name = name
        label = f"'{name}' " if name else ""
        super().__init__(
            f"Tensor {label}at host address {ptr:#x} aliases a planned range of "
            f"{existing} bytes but requests {requested} bytes"
        )
